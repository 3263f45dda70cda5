"""Mapping DMA buffers for a NIC through the dmabuf import helper device."""

from __future__ import annotations

import errno
import fcntl
import os
import struct
from dataclasses import dataclass

from rxdm.iovecs import Iovec
from rxdm.pci import PciAddress

DEFAULT_DMABUF_IMPORT_PATH = "/dev/dmabuf_import_helper"
HELPER_MAX_IOVECS_COUNT = 64

_U32_MASK = 0xFFFFFFFF

# fd, dbdf[4], attach_handle, iovecs_count
MAP_PARAM = struct.Struct("@7I")
# attach_handle, offset, num_valid_iovecs; followed by the iovec array
GET_IOVECS_HEADER = struct.Struct("@3I")
IOVEC_ENTRY = struct.Struct("@PN")
_POINTER_ALIGN = struct.calcsize("P")
IOVECS_OFFSET = -(-GET_IOVECS_HEADER.size // _POINTER_ALIGN) * _POINTER_ALIGN
GET_IOVECS_SIZE = IOVECS_OFFSET + HELPER_MAX_IOVECS_COUNT * IOVEC_ENTRY.size
UNMAP_PARAM = struct.Struct("@I")


def _ioc_none(nr: int, size: int) -> int:
    """Request number of an ioctl with no data direction and type 0."""
    return (size << 16) | nr


IMPORT_HELPER_MAP = _ioc_none(1, MAP_PARAM.size)
IMPORT_HELPER_GET_IOVECS = _ioc_none(2, GET_IOVECS_SIZE)
IMPORT_HELPER_UNMAP = _ioc_none(3, UNMAP_PARAM.size)


@dataclass(frozen=True)
class DmabufBuffer:
    """A DMA buffer attached to a PCI device by the import helper."""

    attach_handle: int
    num_iovecs: int


class DmabufImporter:
    """An open handle on the dmabuf import helper device.

    Failures of the device calls raise OSError.
    """

    def __init__(self, path: str | os.PathLike[str] | None = None) -> None:
        self.path = os.fspath(path) if path else DEFAULT_DMABUF_IMPORT_PATH
        self._fd: int | None = os.open(self.path, os.O_RDWR)

    def __enter__(self) -> "DmabufImporter":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _device(self) -> int:
        if self._fd is None:
            raise ValueError("dmabuf importer is closed")
        return self._fd

    def map(self, dmabuf_fd: int, pci: PciAddress, attach_handle: int) -> DmabufBuffer:
        """Attach ``dmabuf_fd`` to the PCI device ``pci`` under ``attach_handle``."""
        param = bytearray(
            MAP_PARAM.pack(
                dmabuf_fd & _U32_MASK,
                pci.domain,
                pci.bus,
                pci.device,
                pci.function,
                attach_handle & _U32_MASK,
                0,
            )
        )
        fcntl.ioctl(self._device(), IMPORT_HELPER_MAP, param, True)
        values = MAP_PARAM.unpack(param)
        return DmabufBuffer(attach_handle=values[5], num_iovecs=values[6])

    def unmap(self, buf: DmabufBuffer) -> None:
        """Detach a previously mapped buffer."""
        param = bytearray(UNMAP_PARAM.pack(buf.attach_handle & _U32_MASK))
        fcntl.ioctl(self._device(), IMPORT_HELPER_UNMAP, param, True)

    def get_iovecs(self, buf: DmabufBuffer) -> list[Iovec]:
        """Fetch every device-visible segment of a mapped buffer, in order."""
        device = self._device()
        vecs: list[Iovec] = []
        while len(vecs) < buf.num_iovecs:
            offset = len(vecs)
            param = bytearray(GET_IOVECS_SIZE)
            GET_IOVECS_HEADER.pack_into(param, 0, buf.attach_handle & _U32_MASK, offset, 0)
            fcntl.ioctl(device, IMPORT_HELPER_GET_IOVECS, param, True)
            _, _, count = GET_IOVECS_HEADER.unpack_from(param)
            if (
                count == 0
                or count > HELPER_MAX_IOVECS_COUNT
                or offset + count > buf.num_iovecs
            ):
                raise OSError(
                    errno.EIO,
                    f"import helper returned {count} iovecs at offset {offset} "
                    f"of {buf.num_iovecs}",
                )
            entries = param[IOVECS_OFFSET : IOVECS_OFFSET + count * IOVEC_ENTRY.size]
            vecs.extend(Iovec(base, length) for base, length in IOVEC_ENTRY.iter_unpack(entries))
        return vecs

    def close(self) -> None:
        """Close the device; closing twice is harmless."""
        if self._fd is not None:
            os.close(self._fd)
            self._fd = None