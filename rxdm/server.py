"""Request/response server over Unix domain sockets."""

from __future__ import annotations

import errno
import logging
import os
import selectors
import socket
import threading
from collections.abc import Callable

from rxdm.connection import UnixSocketConnection, UnixSocketMessage
from rxdm.messages import RxdmError, StatusCode
from rxdm.uds import uds_address

log = logging.getLogger(__name__)

ServiceHandler = Callable[[int, UnixSocketMessage], "tuple[UnixSocketMessage, bool]"]
CleanupHandler = Callable[[int], None]

_BACKLOG = 128
_POLL_INTERVAL = 0.1

_ERRNO_CODES = {
    errno.ENOENT: StatusCode.NOT_FOUND,
    errno.EEXIST: StatusCode.ALREADY_EXISTS,
    errno.EACCES: StatusCode.PERMISSION_DENIED,
    errno.EPERM: StatusCode.PERMISSION_DENIED,
    errno.EINVAL: StatusCode.INVALID_ARGUMENT,
}


def _os_error(call: str, exc: OSError) -> RxdmError:
    code = _ERRNO_CODES.get(exc.errno or 0, StatusCode.UNKNOWN)
    return RxdmError(code, f"{call}() error: {exc.errno}")


class UnixSocketServer:
    """Serves framed requests on a Unix domain socket from a background thread.

    ``service_handler(client, request)`` returns the response and whether
    the connection should be closed afterwards. ``cleanup_handler(client)``
    runs when a client connection ends.
    """

    def __init__(
        self,
        path: str,
        service_handler: ServiceHandler | None,
        cleanup_handler: CleanupHandler | None = None,
    ) -> None:
        self._path = path
        self._service_handler = service_handler
        self._cleanup_handler = cleanup_handler
        self._running = threading.Event()
        self._thread: threading.Thread | None = None
        self._listener: socket.socket | None = None
        self._selector: selectors.BaseSelector | None = None
        self._clients: dict[int, UnixSocketConnection] = {}
        log.info("Creating UnixSocketServer to listen to path: %s", path)

    def __enter__(self) -> "UnixSocketServer":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()

    @property
    def path(self) -> str:
        return self._path

    def start(self) -> None:
        """Bind, listen and start serving; raises RxdmError on failure."""
        log.info("Starting UnixSocketServer to listen to path: %s", self._path)
        try:
            address = uds_address(self._path)
        except ValueError as exc:
            raise RxdmError(StatusCode.INVALID_ARGUMENT, str(exc)) from exc

        if not address.startswith("\0"):
            try:
                os.unlink(address)
            except FileNotFoundError:
                pass
            except OSError as exc:
                raise _os_error("unlink", exc) from exc

        if self._service_handler is None:
            raise RxdmError(StatusCode.INVALID_ARGUMENT, "Missing service handler.")

        try:
            listener = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        except OSError as exc:
            raise _os_error("socket", exc) from exc
        try:
            listener.bind(address)
        except OSError as exc:
            listener.close()
            raise _os_error("bind", exc) from exc
        try:
            listener.listen(_BACKLOG)
        except OSError as exc:
            listener.close()
            raise _os_error("listen", exc) from exc

        selector = selectors.DefaultSelector()
        selector.register(listener, selectors.EVENT_READ)
        self._listener = listener
        self._selector = selector
        self._running.set()
        thread_name = self._path.replace(":", "_").replace(".", "_")
        self._thread = threading.Thread(
            target=self._event_loop, name=thread_name, daemon=True
        )
        self._thread.start()

    def stop(self) -> None:
        """Stop serving and close the listener and every client connection."""
        self._running.clear()
        if self._thread is not None:
            self._thread.join()
            self._thread = None
        for connection in self._clients.values():
            connection.close()
        self._clients.clear()
        if self._selector is not None:
            self._selector.close()
            self._selector = None
        if self._listener is not None:
            self._listener.close()
            self._listener = None
        log.info("Stopping UnixSocketServer that listens to path: %s", self._path)

    def _event_loop(self) -> None:
        assert self._selector is not None
        while self._running.is_set():
            try:
                events = self._selector.select(timeout=_POLL_INTERVAL)
            except OSError as exc:
                log.error("select() error: %s", exc.errno)
                continue
            for key, _mask in events:
                if key.fileobj is self._listener:
                    self._handle_listener()
                else:
                    self._handle_client(key.data)

    def _handle_listener(self) -> None:
        assert self._listener is not None and self._selector is not None
        try:
            sock, _addr = self._listener.accept()
        except OSError as exc:
            log.error("accept() error: %s", exc.errno)
            return
        client = sock.fileno()
        log.info("Accepted socket: %d", client)
        self._clients[client] = UnixSocketConnection(sock)
        self._selector.register(sock, selectors.EVENT_READ, data=client)

    def _handle_client(self, client: int) -> None:
        connection = self._clients.get(client)
        if connection is None:
            return
        fin = False
        if connection.receive():
            if connection.has_new_message_to_read():
                assert self._service_handler is not None
                try:
                    response, fin = self._service_handler(
                        client, connection.read_message()
                    )
                    connection.add_message_to_send(response)
                except Exception:
                    log.exception("Service handler failed for client %d", client)
                    fin = True
                else:
                    if not connection.send():
                        fin = True
        else:
            fin = True

        if fin:
            if self._cleanup_handler is not None:
                try:
                    self._cleanup_handler(client)
                except Exception:
                    log.exception("Cleanup handler failed for client %d", client)
            self._remove_client(client)

    def _remove_client(self, client: int) -> None:
        connection = self._clients.pop(client, None)
        if connection is None:
            return
        if self._selector is not None:
            try:
                self._selector.unregister(connection._sock)
            except (KeyError, ValueError):
                pass
        connection.close()