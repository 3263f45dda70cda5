"""Translation of DMA buffers into NIC-visible address segments."""

from __future__ import annotations

import abc
import logging
import os
from dataclasses import dataclass, field

from rxdm.dmabuf import DmabufBuffer, DmabufImporter
from rxdm.iovecs import Iovec, coalesce_iovecs
from rxdm.messages import RxdmError, StatusCode
from rxdm.pci import PciAddress, parse_pci_addr

log = logging.getLogger(__name__)


class AddrTranslator(abc.ABC):
    """Pins DMA buffers for a device and reports their segments."""

    @abc.abstractmethod
    def init(self) -> bool:
        """Prepare the translator; False on failure."""

    @abc.abstractmethod
    def map(self, dmabuf_fd: int) -> int:
        """Pin a DMA buffer and return its allocation id; RxdmError on failure."""

    @abc.abstractmethod
    def get_iovecs(self, allocation_id: int) -> list[Iovec]:
        """Return the segments of a mapped buffer; RxdmError on failure."""

    @abc.abstractmethod
    def unmap(self, allocation_id: int) -> None:
        """Release a mapped buffer; unknown ids are ignored."""


@dataclass
class _AddrCtx:
    buf: DmabufBuffer
    vecs: list[Iovec] = field(default_factory=list)


class FasTrakAddrTranslator(AddrTranslator):
    """Maps DMA buffers for one NIC through the dmabuf import helper."""

    def __init__(
        self,
        nic_pci_addr: str,
        dmabuf_import_path: str | os.PathLike[str] | None = None,
        coalesce: bool = True,
    ) -> None:
        self.nic_pci_addr = nic_pci_addr
        self._import_path = dmabuf_import_path
        self._coalesce = coalesce
        self._nic_pci: PciAddress | None = None
        self._importer: DmabufImporter | None = None
        self._ctxs: dict[int, _AddrCtx] = {}
        self._next_id = 0
        self._next_attach_handle = 0

    def __enter__(self) -> "FasTrakAddrTranslator":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def init(self) -> bool:
        log.info("FasTrakAddrTranslator: Initializing on PCI BDF %s", self.nic_pci_addr)
        try:
            self._nic_pci = parse_pci_addr(self.nic_pci_addr)
        except ValueError:
            return False
        try:
            self._importer = DmabufImporter(self._import_path)
        except OSError as exc:
            log.error("Failed to create dmabuf importer context: %s", exc)
            return False
        return True

    def _require_importer(self) -> tuple[DmabufImporter, PciAddress]:
        if self._importer is None or self._nic_pci is None:
            raise RxdmError(StatusCode.INTERNAL, "Addr Translator is not initialized")
        return self._importer, self._nic_pci

    def map(self, dmabuf_fd: int) -> int:
        importer, pci = self._require_importer()
        try:
            buf = importer.map(dmabuf_fd, pci, self._next_attach_handle)
        except OSError as exc:
            raise RxdmError(
                StatusCode.INTERNAL,
                f"Failed to map dmabuf fd {dmabuf_fd}, dmabuf_importer_map "
                f"returned -1, errno {exc.strerror}",
            ) from exc
        self._next_attach_handle += 1
        allocation_id = self._next_id
        self._next_id += 1
        self._ctxs[allocation_id] = _AddrCtx(buf)
        return allocation_id

    def get_iovecs(self, allocation_id: int) -> list[Iovec]:
        ctx = self._ctxs.get(allocation_id)
        if ctx is None:
            raise RxdmError(
                StatusCode.INTERNAL,
                f"Cannot find id {allocation_id} in Addr Translator",
            )
        if not ctx.vecs:
            ctx.vecs = self._prepare_iovecs(ctx.buf)
        return list(ctx.vecs)

    def _prepare_iovecs(self, buf: DmabufBuffer) -> list[Iovec]:
        importer, _ = self._require_importer()
        try:
            vecs = importer.get_iovecs(buf)
        except OSError as exc:
            raise RxdmError(StatusCode.INTERNAL, "Failed to retrieve iovecs") from exc
        return coalesce_iovecs(vecs) if self._coalesce else vecs

    def _unmap_ctx(self, ctx: _AddrCtx) -> None:
        if self._importer is None:
            return
        try:
            self._importer.unmap(ctx.buf)
        except OSError as exc:
            log.warning("Failed to unmap dmabuf: %s", exc)

    def unmap(self, allocation_id: int) -> None:
        ctx = self._ctxs.pop(allocation_id, None)
        if ctx is not None:
            self._unmap_ctx(ctx)

    def close(self) -> None:
        """Unmap every buffer and close the import helper."""
        for ctx in self._ctxs.values():
            self._unmap_ctx(ctx)
        self._ctxs.clear()
        if self._importer is not None:
            self._importer.close()
            self._importer = None