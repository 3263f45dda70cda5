"""Pairing of GPUs with the NICs that share their PCIe switch."""

from __future__ import annotations

import logging
import os
import socket
from dataclasses import dataclass, field
from typing import Iterable, Iterator

import psutil

from rxdm.pci import (
    H100_DEVICE_ID,
    NVIDIA_VENDOR_ID,
    list_vendor_devices,
    parse_pci_addr,
    read_pci_id,
)

log = logging.getLogger(__name__)

MAX_HOPS = 4
DEFAULT_NUM_HOPS = 2
SYSFS_NET_ROOT = "/sys/class/net"


@dataclass
class GpuRxqConfiguration:
    """A GPU and the network interface serving its receive queues."""

    gpu_pci_addr: str
    nic_pci_addr: str
    ifname: str
    ip_addr: str
    rx_queue_ids: list[int] = field(default_factory=list)


def configuration_sort_key(config: GpuRxqConfiguration) -> tuple[str, str]:
    """Order by NIC PCI address, then by GPU PCI address."""
    return (config.nic_pci_addr, config.gpu_pci_addr)


def _system_interfaces() -> Iterator[tuple[str, str]]:
    """Yield (interface name, IP address) for every IPv4/IPv6 address."""
    for name, addrs in psutil.net_if_addrs().items():
        for addr in addrs:
            if addr.family in (socket.AF_INET, socket.AF_INET6):
                yield name, addr.address.split("%", 1)[0]


class A3GpuRxqConfigurator:
    """Discovers NICs through sysfs and pairs them with GPUs on the same switch.

    ``num_hops`` is the number of PCI levels between a NIC and the switch it
    shares with its GPUs; it is capped at ``MAX_HOPS``. ``interfaces`` is an
    iterable of (name, IP address) pairs; when omitted the system's
    interfaces are used.
    """

    def __init__(
        self,
        num_hops: int = DEFAULT_NUM_HOPS,
        sysfs_net_root: str | os.PathLike[str] = SYSFS_NET_ROOT,
        interfaces: Iterable[tuple[str, str]] | None = None,
    ) -> None:
        if num_hops < 1:
            raise ValueError(f"num_hops must be at least 1, got {num_hops}")
        self.num_hops = min(num_hops, MAX_HOPS)
        self._root = os.fspath(sysfs_net_root)
        self._interfaces = list(interfaces) if interfaces is not None else None
        self._netdevs: dict[str, tuple[str, str]] = {}
        self._parent_switches: dict[str, None] = {}
        self.nic_vendor_id = ""
        self.nic_device_id = ""

    def discover_nics(self) -> dict[str, tuple[str, str]]:
        """Find interfaces backed by PCI devices.

        Returns a mapping of lower-case NIC PCI address to
        (interface name, IP address).
        """
        interfaces = (
            self._interfaces
            if self._interfaces is not None
            else list(_system_interfaces())
        )
        for ifname, ip_addr in interfaces:
            sysfs_path = os.path.join(self._root, ifname, "device")
            try:
                real_path = os.path.realpath(sysfs_path, strict=True)
            except OSError:
                continue
            if "/virtual" in real_path:
                log.info("%s is a virtual device, skipping.", ifname)
                continue
            # Identical for every NIC of one machine, so overwriting is fine.
            self.nic_vendor_id = read_pci_id(os.path.join(sysfs_path, "vendor"))
            self.nic_device_id = read_pci_id(os.path.join(sysfs_path, "device"))

            parts = real_path.rstrip("/").rsplit("/", self.num_hops)
            if len(parts) <= self.num_hops:
                continue
            parent, pci_addr = parts[0], parts[-1]
            try:
                parse_pci_addr(pci_addr)
            except ValueError:
                continue
            if not ip_addr:
                continue
            key = pci_addr.lower()
            if key in self._netdevs:
                continue
            self._netdevs[key] = (ifname, ip_addr)
            log.info("PCI addr for net if %s: %s", ifname, pci_addr)
            log.info("Root dir: %s", parent)
            self._parent_switches[parent] = None
        return dict(self._netdevs)

    def get_configurations(self) -> list[GpuRxqConfiguration]:
        """Pair GPUs and NICs under each switch in ascending PCI order."""
        self.discover_nics()
        configurations: list[GpuRxqConfiguration] = []
        for parent in self._parent_switches:
            try:
                gpus = list_vendor_devices(parent, NVIDIA_VENDOR_ID, H100_DEVICE_ID)
            except OSError:
                log.warning("Failed to list GPUs under %s", parent)
                continue
            try:
                nics = list_vendor_devices(
                    parent, self.nic_vendor_id, self.nic_device_id
                )
            except OSError:
                log.warning("Failed to list NICs under %s", parent)
                continue
            if not nics or not gpus:
                continue

            gpus.sort()
            nics.sort()
            gpus_per_nic = max(1, len(gpus) // len(nics))
            for position, gpu in enumerate(gpus):
                nic = nics[min(position // gpus_per_nic, len(nics) - 1)].lower()
                netdev = self._netdevs.get(nic)
                if netdev is None:
                    log.warning("Unknown NIC PCI: %s", nic)
                    continue
                ifname, ip_addr = netdev
                configurations.append(
                    GpuRxqConfiguration(gpu.lower(), nic, ifname, ip_addr)
                )
                log.info(
                    "GpuRxqConfigurator: Use netdev %s for GPU PCI %s, "
                    "NIC PCI %s, NIC IP %s",
                    ifname,
                    gpu,
                    nic,
                    ip_addr,
                )
        configurations.sort(key=configuration_sort_key)
        return configurations