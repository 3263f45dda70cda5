"""Service registering client GPU buffers with DXS through Unix sockets."""

from __future__ import annotations

import abc
import functools
import logging
import os
import threading
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field

from rxdm.addr_translator import AddrTranslator, FasTrakAddrTranslator
from rxdm.connection import UnixSocketMessage
from rxdm.iovecs import Iovec
from rxdm.messages import (
    BufferOpReq,
    BufferOpResp,
    BufferOpType,
    RxdmError,
    StatusCode,
    decode_message,
    encode_message,
    status_to_rpc,
)
from rxdm.resource_tracker import BufferResourceTracker
from rxdm.server import UnixSocketServer
from rxdm.uds import buf_op_uds_path

log = logging.getLogger(__name__)

FTS_CLIENT_MAGIC = 0x465453


class BufferManagerService(abc.ABC):
    """A component that serves client requests over Unix domain sockets."""

    @abc.abstractmethod
    def initialize(self) -> None:
        """Create the servers; raise RxdmError on failure."""

    @abc.abstractmethod
    def start(self) -> None:
        """Start serving requests; raise RxdmError on failure."""


class DxsBufferManager(abc.ABC):
    """The DXS side of buffer registration."""

    @abc.abstractmethod
    def reg_buffer(self, iovecs: list[Iovec]) -> int:
        """Register the segments of a buffer and return its handle."""

    @abc.abstractmethod
    def dereg_buffer(self, reg_handle: int) -> None:
        """Release a registered buffer."""

    @abc.abstractmethod
    def health_check(self) -> bool:
        """True while the DXS connection is usable."""


@dataclass
class NicBinding:
    """Everything that serves buffer operations for one NIC."""

    ip_addr: str
    nic_pci_addr: str
    addr_translator: AddrTranslator
    dxs_client: DxsBufferManager
    resource_tracker: BufferResourceTracker = field(
        default_factory=BufferResourceTracker
    )


@dataclass
class _NicService:
    binding: NicBinding
    server: UnixSocketServer | None = None


def _reg_buffer(client: int, binding: NicBinding, request: UnixSocketMessage) -> int:
    if request.fd is None:
        raise RxdmError(
            StatusCode.INVALID_ARGUMENT,
            "Buffer registration request does not have a valid fd set.",
        )
    dmabuf_fd = request.fd
    translator = binding.addr_translator
    try:
        allocation_id = translator.map(dmabuf_fd)
    except RxdmError as exc:
        raise RxdmError(
            StatusCode.INTERNAL,
            f"Addr translator failed to map dmabuf fd {dmabuf_fd}: {exc.message}",
        ) from exc
    try:
        try:
            iovecs = translator.get_iovecs(allocation_id)
        except RxdmError as exc:
            raise RxdmError(
                StatusCode.INTERNAL,
                "Failed to get iovecs for buffer registration request: "
                f"{exc.message}",
            ) from exc
        reg_handle = binding.dxs_client.reg_buffer(iovecs)
        binding.resource_tracker.track_buffer(
            client, dmabuf_fd, allocation_id, reg_handle
        )
    except BaseException:
        translator.unmap(allocation_id)
        raise
    return reg_handle


def _dereg_buffer(client: int, binding: NicBinding, req: BufferOpReq) -> None:
    if req.reg_handle is None:
        raise RxdmError(StatusCode.INVALID_ARGUMENT, "Missing registration handle.")
    tracker = binding.resource_tracker
    dma_id = tracker.get_dmabuf_id(client, req.reg_handle)
    binding.dxs_client.dereg_buffer(req.reg_handle)
    binding.addr_translator.unmap(dma_id)
    tracker.untrack_buffer(client, req.reg_handle)


def _dispatch(
    client: int, binding: NicBinding, request: UnixSocketMessage
) -> int | None:
    try:
        if request.text is None:
            raise ValueError("request has no text")
        req = decode_message(BufferOpReq, request.text)
    except ValueError as exc:
        raise RxdmError(
            StatusCode.INVALID_ARGUMENT,
            "Memory importer: Failed to parse request, abort connection.",
        ) from exc
    if req.fts_magic_value != FTS_CLIENT_MAGIC:
        raise RxdmError(
            StatusCode.INVALID_ARGUMENT,
            "Memory importer: Request does not have valid authentication for DXS "
            "clients.",
        )
    if req.op_type not in (BufferOpType.REG_BUFFER, BufferOpType.DEREG_BUFFER):
        raise RxdmError(
            StatusCode.INVALID_ARGUMENT,
            "Memory importer: Request does not have a valid op type, needs to be "
            "one of tcpdirect::BufferOpType::REG_BUFFER(1) or "
            "tcpdirect::BufferOpType::DEREG_BUFFER(2). Actual value: "
            f"{int(req.op_type)}",
        )
    if req.op_type == BufferOpType.REG_BUFFER:
        return _reg_buffer(client, binding, request)
    _dereg_buffer(client, binding, req)
    return None


def _clean_up(client: int, binding: NicBinding) -> None:
    tracker = binding.resource_tracker
    try:
        reg_handles = list(tracker.get_reg_handles(client))
    except RxdmError as exc:
        if exc.code is StatusCode.NOT_FOUND:
            log.info("Client %d has no registered buffers to deregister.", client)
        else:
            log.error("%s", exc)
        return

    for reg_handle in reg_handles:
        try:
            binding.dxs_client.dereg_buffer(reg_handle)
        except RxdmError as exc:
            log.error(
                "Memory importer: Failed to deregister buffer with DXS: "
                "DeregSendBuffer returned %s",
                exc,
            )
        try:
            dma_id = tracker.get_dmabuf_id(client, reg_handle)
        except RxdmError as exc:
            log.error("Failed to get dma_id for reg_handle: %d: %s", reg_handle, exc)
        else:
            binding.addr_translator.unmap(dma_id)
        try:
            tracker.untrack_buffer(client, reg_handle)
        except RxdmError as exc:
            log.error("Failed to untrack buffer for client: %d: %s", client, exc)

    tracker.unregister_client(client)
    log.debug("Unregistered client: %d", client)


class GpuMemImporter(BufferManagerService):
    """Registers and deregisters client DMA buffers, one server per NIC.

    When the last connected client leaves, ``all_clients_exited_callback``
    is called.
    """

    def __init__(
        self,
        bindings: Iterable[NicBinding],
        all_clients_exited_callback: Callable[[], None] | None = None,
    ) -> None:
        self._services = [_NicService(binding) for binding in bindings]
        self._callback = all_clients_exited_callback
        self._lock = threading.Lock()
        self._connected: set[int] = set()
        self._closed = False

    @classmethod
    def from_nic_infos(
        cls,
        nic_infos: Sequence,
        all_clients_exited_callback: Callable[[], None] | None = None,
        dmabuf_import_path: str | os.PathLike[str] | None = None,
    ) -> "GpuMemImporter":
        """Build an importer with a dmabuf address translator for each NIC."""
        bindings = [
            NicBinding(
                ip_addr=info.ip_addr,
                nic_pci_addr=info.nic_pci_addr,
                addr_translator=FasTrakAddrTranslator(
                    info.nic_pci_addr, dmabuf_import_path
                ),
                dxs_client=info.dxs_client,
            )
            for info in nic_infos
        ]
        return cls(bindings, all_clients_exited_callback)

    def __enter__(self) -> "GpuMemImporter":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @property
    def bindings(self) -> list[NicBinding]:
        return [service.binding for service in self._services]

    def handle_request(
        self, client: int, binding: NicBinding, request: UnixSocketMessage
    ) -> tuple[UnixSocketMessage, bool]:
        """Serve one registration or deregistration request.

        Returns the response and whether the connection should be closed;
        any failure closes it.
        """
        resp = BufferOpResp()
        fin = False
        error: RxdmError | None = None
        try:
            resp.reg_handle = _dispatch(client, binding, request)
        except RxdmError as exc:
            log.warning("%s", exc)
            error = exc
            fin = True
        resp.status = status_to_rpc(error)
        return UnixSocketMessage(text=encode_message(resp)), fin

    def _add_connected_client(self, client: int, binding: NicBinding) -> None:
        binding.resource_tracker.register_client(client)
        with self._lock:
            if client in self._connected:
                return
            self._connected.add(client)
        log.info("Memory importer: Added client: %d", client)

    def _remove_connected_client(self, binding: NicBinding, client: int) -> None:
        _clean_up(client, binding)
        with self._lock:
            self._connected.discard(client)
            all_gone = not self._connected
        log.info("Memory importer: Removed client: %d", client)
        if all_gone and self._callback is not None:
            log.info(
                "Memory importer: Cleanup callback called due to no active "
                "DXS connection."
            )
            self._callback()

    def _serve(
        self, binding: NicBinding, client: int, request: UnixSocketMessage
    ) -> tuple[UnixSocketMessage, bool]:
        self._add_connected_client(client, binding)
        return self.handle_request(client, binding, request)

    def initialize(self) -> None:
        for service in self._services:
            if not service.binding.addr_translator.init():
                raise RxdmError(
                    StatusCode.UNAVAILABLE,
                    "Memory importer: failed to initialize addr translator on "
                    f"NIC IP {service.binding.ip_addr}.",
                )
        for service in self._services:
            binding = service.binding
            service.server = UnixSocketServer(
                buf_op_uds_path(binding.ip_addr),
                functools.partial(self._serve, binding),
                functools.partial(self._remove_connected_client, binding),
            )

    def start(self) -> None:
        log.info("Starting Unix socket servers ...")
        for service in self._services:
            ip_addr = service.binding.ip_addr
            if service.server is None:
                raise RxdmError(
                    StatusCode.UNAVAILABLE,
                    "Failed to start memory importer: Unix socket servers on NIC "
                    f"IP {ip_addr} are not initialized yet.",
                )
            try:
                service.server.start()
            except RxdmError as exc:
                raise RxdmError(
                    StatusCode.INTERNAL,
                    f"Failed to start Unix socket server on NIC IP {ip_addr} for "
                    f"memory importer: {exc.message}",
                ) from exc
        log.info("Memory import servers started ...")

    def close(self) -> None:
        """Stop the servers and release every client's buffers."""
        if self._closed:
            return
        self._closed = True
        for service in self._services:
            if service.server is not None:
                service.server.stop()
                service.server = None
            binding = service.binding
            for client in list(binding.resource_tracker.clients()):
                _clean_up(client, binding)
            binding.resource_tracker.close()
            close_translator = getattr(binding.addr_translator, "close", None)
            if close_translator is not None:
                close_translator()