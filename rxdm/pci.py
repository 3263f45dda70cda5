"""PCI address parsing and sysfs device discovery."""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass

log = logging.getLogger(__name__)

SYSFS_PCI_DEVICES_PATH = "/sys/bus/pci/devices"
NVIDIA_VENDOR_ID = "0x10de"
H100_DEVICE_ID = "0x2330"

_PCI_ID_LEN = 6
_HEX = r"\s*(?:0[xX])?([0-9a-fA-F]+)"
_PCI_ADDR_RE = re.compile(rf"{_HEX}:{_HEX}:{_HEX}\.{_HEX}")


@dataclass(frozen=True)
class PciAddress:
    """A PCI domain:bus:device.function address."""

    domain: int
    bus: int
    device: int
    function: int

    def __str__(self) -> str:
        return (
            f"{self.domain:04x}:{self.bus:02x}:{self.device:02x}.{self.function:x}"
        )


def parse_pci_addr(text: str) -> PciAddress:
    """Parse ``domain:bus:device.function`` written in hexadecimal.

    Raises ValueError when the text is not a PCI address.
    """
    match = _PCI_ADDR_RE.match(text)
    if match is None:
        raise ValueError(f"not a PCI address: {text!r}")
    domain, bus, device, function = (int(g, 16) & 0xFFFF for g in match.groups())
    return PciAddress(domain, bus, device, function)


def read_pci_id(path: str | os.PathLike[str]) -> str:
    """Read up to six characters of a sysfs id file; empty string on failure."""
    try:
        with open(path, "rb") as fh:
            data = fh.read(_PCI_ID_LEN)
    except OSError:
        return ""
    return data.split(b"\0", 1)[0].decode("ascii", errors="replace")


def _walk_vendor_devices(
    parent_dir: str,
    vendor_id: str,
    device_id: str | None,
    found: list[str],
) -> None:
    with os.scandir(parent_dir) as entries:
        for entry in entries:
            try:
                parse_pci_addr(entry.name)
            except ValueError:
                continue
            sub_path = os.path.join(parent_dir, entry.name)
            vendor = read_pci_id(os.path.join(sub_path, "vendor"))
            device = read_pci_id(os.path.join(sub_path, "device"))
            if vendor == vendor_id and (device_id is None or device == device_id):
                log.info("Match: PCI address %s", entry.name)
                found.append(entry.name)
            try:
                if entry.is_dir():
                    _walk_vendor_devices(sub_path, vendor_id, device_id, found)
            except OSError:
                continue


def list_vendor_devices(
    parent_dir: str | os.PathLike[str],
    vendor_id: str,
    device_id: str | None = None,
) -> list[str]:
    """List PCI devices below ``parent_dir`` with the given vendor id.

    When ``device_id`` is given only devices with that id are listed.
    Raises OSError when ``parent_dir`` itself cannot be read.
    """
    root = os.fspath(parent_dir)
    found: list[str] = []
    try:
        _walk_vendor_devices(root, vendor_id, device_id, found)
    except OSError as exc:
        log.error("Failed to open parent directory [%s]. Error: %s", root, exc)
        raise
    return found