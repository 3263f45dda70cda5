"""Blocking request/response client over a Unix domain socket."""

from __future__ import annotations

import errno
import socket
import struct
import threading
from datetime import timedelta

from rxdm.connection import UnixSocketConnection, UnixSocketMessage
from rxdm.messages import RxdmError, StatusCode
from rxdm.uds import uds_address

DEFAULT_CONNECT_TIMEOUT = 15.0

_ERRNO_CODES = {
    errno.ENOENT: StatusCode.NOT_FOUND,
    errno.EEXIST: StatusCode.ALREADY_EXISTS,
    errno.EACCES: StatusCode.PERMISSION_DENIED,
    errno.EPERM: StatusCode.PERMISSION_DENIED,
    errno.EINVAL: StatusCode.INVALID_ARGUMENT,
    errno.ECONNREFUSED: StatusCode.UNAVAILABLE,
    errno.ECONNRESET: StatusCode.UNAVAILABLE,
    errno.EPIPE: StatusCode.UNAVAILABLE,
    errno.EIO: StatusCode.UNAVAILABLE,
    errno.EAGAIN: StatusCode.UNAVAILABLE,
}


def _errno_error(call: str, error_number: int) -> RxdmError:
    code = _ERRNO_CODES.get(error_number, StatusCode.UNKNOWN)
    return RxdmError(code, f"{call}() error: {error_number}")


def _timeval(seconds: float) -> bytes:
    whole = int(seconds)
    return struct.pack("@ll", whole, int((seconds - whole) * 1_000_000))


class UnixSocketClient:
    """Sends one request at a time and waits for its response. Thread safe."""

    def __init__(
        self, path: str, connect_timeout: float | timedelta = DEFAULT_CONNECT_TIMEOUT
    ) -> None:
        if isinstance(connect_timeout, timedelta):
            connect_timeout = connect_timeout.total_seconds()
        self._path = path
        self._timeout = max(0.0, float(connect_timeout))
        self._lock = threading.Lock()
        self._conn: UnixSocketConnection | None = None

    def __enter__(self) -> "UnixSocketClient":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @property
    def path(self) -> str:
        return self._path

    def connect(self) -> None:
        """Connect to the server; raises RxdmError on failure."""
        try:
            address = uds_address(self._path)
        except ValueError as exc:
            raise RxdmError(StatusCode.INVALID_ARGUMENT, str(exc)) from exc
        try:
            sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        except OSError as exc:
            raise _errno_error("socket", exc.errno or 0) from exc
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_SNDTIMEO, _timeval(self._timeout))
        except OSError as exc:
            sock.close()
            raise _errno_error("setsockopt", exc.errno or 0) from exc
        try:
            sock.connect(address)
        except OSError as exc:
            sock.close()
            raise _errno_error("connect", exc.errno or 0) from exc
        with self._lock:
            if self._conn is not None:
                self._conn.close()
            self._conn = UnixSocketConnection(sock)

    def make_request(self, message: UnixSocketMessage) -> UnixSocketMessage:
        """Send ``message`` and return the server's response."""
        with self._lock:
            conn = self._conn
            if conn is None:
                raise RxdmError(StatusCode.UNAVAILABLE, "Client is not connected.")
            conn.add_message_to_send(message)
            while conn.has_pending_message_to_send():
                if not conn.send():
                    break
            while not conn.has_new_message_to_read():
                if not conn.receive():
                    # Zero means the peer closed the connection.
                    error_number = conn.last_errno or errno.EIO
                    raise _errno_error("receive", error_number)
            return conn.read_message()

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None