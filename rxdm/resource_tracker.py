"""Per-client bookkeeping of registered DMA buffers."""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass

from rxdm.messages import RxdmError, StatusCode

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class _BufferInfo:
    dmabuf_fd: int
    dmabuf_id: int


class BufferResourceTracker:
    """Tracks, per client, the DMA buffers registered under each handle.

    The tracker owns the buffer file descriptors and closes them when a
    buffer is untracked or the tracker is closed. Thread safe.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._clients: dict[int, dict[int, _BufferInfo]] = {}

    def __enter__(self) -> "BufferResourceTracker":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def track_buffer(
        self, client: int, dmabuf_fd: int, dmabuf_id: int, reg_handle: int
    ) -> None:
        with self._lock:
            buffers = self._clients.get(client)
            if buffers is None:
                raise RxdmError(
                    StatusCode.INTERNAL,
                    f"Client {client} not found in resource tracker",
                )
            if reg_handle in buffers:
                raise RxdmError(
                    StatusCode.INTERNAL,
                    "Reg handle already exists in resource tracker",
                )
            buffers[reg_handle] = _BufferInfo(dmabuf_fd, dmabuf_id)
        log.debug(
            "Client: %d, tracked buffer: %d, dmabuf id: %d, reg handle: %d",
            client,
            dmabuf_fd,
            dmabuf_id,
            reg_handle,
        )

    def get_dmabuf_id(self, client: int, reg_handle: int) -> int:
        with self._lock:
            buffers = self._clients.get(client)
            if buffers is None:
                raise RxdmError(
                    StatusCode.INTERNAL,
                    f"Client {client} not found in fetching dma buffer id for "
                    f"{reg_handle}",
                )
            info = buffers.get(reg_handle)
            if info is None:
                raise RxdmError(
                    StatusCode.INVALID_ARGUMENT,
                    f"Invalid registration handle: {reg_handle}.",
                )
            return info.dmabuf_id

    def get_reg_handles(self, client: int) -> list[int]:
        with self._lock:
            buffers = self._clients.get(client)
            if buffers is None:
                raise RxdmError(
                    StatusCode.NOT_FOUND,
                    f"Client {client} not found in resource tracker",
                )
            return list(buffers)

    def clients(self) -> list[int]:
        with self._lock:
            return list(self._clients)

    def register_client(self, client: int) -> None:
        """Register a client; registering an existing client changes nothing."""
        with self._lock:
            self._clients.setdefault(client, {})

    def unregister_client(self, client: int) -> None:
        with self._lock:
            self._clients.pop(client, None)

    def untrack_buffer(self, client: int, reg_handle: int) -> None:
        """Forget a buffer and close its file descriptor."""
        with self._lock:
            buffers = self._clients.get(client)
            if buffers is None:
                raise RxdmError(
                    StatusCode.INTERNAL,
                    f"Client {client} not found in untracking reg buffer "
                    f"{reg_handle}",
                )
            info = buffers.get(reg_handle)
            if info is None:
                raise RxdmError(
                    StatusCode.INTERNAL,
                    f"Reg handle {reg_handle} not found in client {client}'s "
                    "reg buffers",
                )
            log.debug(
                "Client: %d, untracked buffer: %d, dmabuf id: %d, reg handle: %d",
                client,
                info.dmabuf_fd,
                info.dmabuf_id,
                reg_handle,
            )
            try:
                os.close(info.dmabuf_fd)
            except OSError as exc:
                raise RxdmError(
                    StatusCode.INTERNAL,
                    f"Failed to close dmabuf fd {info.dmabuf_fd}, "
                    f"errno = {exc.errno}",
                ) from exc
            del buffers[reg_handle]

    def close(self) -> None:
        """Close every tracked buffer's file descriptor and forget all clients."""
        with self._lock:
            for buffers in self._clients.values():
                for info in buffers.values():
                    try:
                        os.close(info.dmabuf_fd)
                    except OSError as exc:
                        log.error(
                            "Failed to close dmabuf fd %d, errno = %s",
                            info.dmabuf_fd,
                            exc.errno,
                        )
            self._clients.clear()