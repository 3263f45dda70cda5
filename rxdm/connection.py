"""Length-prefixed message framing over a Unix stream socket.

Each message goes on the wire as a two-byte big-endian length followed by
that many bytes of text. A file descriptor may travel alongside a message
as SCM_RIGHTS ancillary data. A message that carries only a descriptor is
sent as a zero length with the descriptor attached.
"""

from __future__ import annotations

import array
import enum
import logging
import os
import socket
import struct
from collections import deque
from dataclasses import dataclass
from typing import Iterable

log = logging.getLogger(__name__)

_LENGTH = struct.Struct("!H")
MAX_TEXT_LENGTH = 0xFFFF
_FD_SIZE = array.array("i").itemsize
_ANCILLARY_SPACE = socket.CMSG_SPACE(_FD_SIZE)


@dataclass
class UnixSocketMessage:
    """One message: optional text and an optional file descriptor."""

    text: bytes | None = None
    fd: int | None = None


class _State(enum.Enum):
    LENGTH = 0
    PAYLOAD = 1


class _SendStatus(enum.Enum):
    DONE = 0
    IN_PROGRESS = 1
    STOPPED = 2
    ERROR = 3


def _rights(fd: int) -> list[tuple[int, int, array.array]]:
    return [(socket.SOL_SOCKET, socket.SCM_RIGHTS, array.array("i", [fd]))]


def _fds_from_ancillary(ancdata: Iterable[tuple[int, int, bytes]]) -> list[int]:
    fds: list[int] = []
    for level, kind, data in ancdata:
        if level != socket.SOL_SOCKET or kind != socket.SCM_RIGHTS:
            continue
        values = array.array("i")
        values.frombytes(data[: len(data) - len(data) % _FD_SIZE])
        fds.extend(values)
    return [fd for fd in fds if fd > 0]


def _close_quietly(fd: int) -> None:
    try:
        os.close(fd)
    except OSError:
        pass


class UnixSocketConnection:
    """A framed, bidirectional message stream over a connected socket.

    The connection owns the socket and closes it on ``close``.
    """

    def __init__(self, sock: socket.socket) -> None:
        self._sock = sock
        self._read_state = _State.LENGTH
        self._read_length = _LENGTH.size
        self._read_buffer = bytearray()
        self._pending_fd: int | None = None
        self._send_state = _State.LENGTH
        self._send_chunk = b""
        self._send_offset = 0
        self._incoming: deque[UnixSocketMessage] = deque()
        self._outgoing: deque[UnixSocketMessage] = deque()
        self._last_errno: int | None = None

    def __enter__(self) -> "UnixSocketConnection":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @property
    def last_errno(self) -> int | None:
        """The errno of the last failed socket call; 0 when the peer closed."""
        return self._last_errno

    def fileno(self) -> int:
        return self._sock.fileno()

    def _keep_fds(self, fds: list[int]) -> None:
        for fd in fds:
            if self._pending_fd is None:
                self._pending_fd = fd
            else:
                _close_quietly(fd)

    def _take_fd(self) -> int | None:
        fd, self._pending_fd = self._pending_fd, None
        return fd

    def receive(self) -> bool:
        """Read what is available of the current message.

        Returns False when the peer has closed the connection or the read
        failed; completed messages are queued for ``read_message``.
        """
        wanted = self._read_length - len(self._read_buffer)
        try:
            data, ancdata, _flags, _addr = self._sock.recvmsg(
                wanted, _ANCILLARY_SPACE
            )
        except OSError as exc:
            self._last_errno = exc.errno
            return False
        fds = _fds_from_ancillary(ancdata)
        if not data:
            for fd in fds:
                _close_quietly(fd)
            self._last_errno = 0
            return False
        self._keep_fds(fds)
        self._read_buffer += data
        if len(self._read_buffer) < self._read_length:
            return True

        if self._read_state is _State.LENGTH:
            (length,) = _LENGTH.unpack(bytes(self._read_buffer))
            if length == 0:
                self._incoming.append(UnixSocketMessage(fd=self._take_fd()))
            else:
                # A descriptor arriving with the length belongs to no message.
                fd = self._take_fd()
                if fd is not None:
                    _close_quietly(fd)
                self._read_state = _State.PAYLOAD
                self._read_length = length
        else:
            self._incoming.append(
                UnixSocketMessage(text=bytes(self._read_buffer), fd=self._take_fd())
            )
            self._read_state = _State.LENGTH
            self._read_length = _LENGTH.size
        self._read_buffer = bytearray()
        return True

    def _send_fd(self, fd: int) -> _SendStatus:
        try:
            self._sock.sendmsg([_LENGTH.pack(0)], _rights(fd))
        except OSError as exc:
            self._last_errno = exc.errno
            return _SendStatus.ERROR
        return _SendStatus.DONE

    def _send_text(self, text: bytes, fd: int | None) -> _SendStatus:
        if self._send_state is _State.LENGTH and self._send_offset == 0:
            self._send_chunk = _LENGTH.pack(len(text))
        remaining = self._send_chunk[self._send_offset :]
        carries_fd = (
            fd is not None
            and fd > 0
            and self._send_offset == 0
            and (self._send_state is _State.PAYLOAD or not text)
        )
        sent = 0
        if remaining:
            try:
                sent = self._sock.sendmsg(
                    [remaining], _rights(fd) if carries_fd else []
                )
            except BlockingIOError:
                return _SendStatus.STOPPED
            except OSError as exc:
                self._last_errno = exc.errno
                return _SendStatus.ERROR
        self._send_offset += sent
        if self._send_offset < len(self._send_chunk):
            return _SendStatus.STOPPED
        self._send_offset = 0
        if self._send_state is _State.LENGTH:
            self._send_state = _State.PAYLOAD
            self._send_chunk = text
            return _SendStatus.IN_PROGRESS
        self._send_state = _State.LENGTH
        self._send_chunk = b""
        return _SendStatus.DONE

    def send(self) -> bool:
        """Send queued messages until done or the socket would block.

        Returns False on a send error or for a message with neither text
        nor descriptor.
        """
        while self._outgoing:
            message = self._outgoing[0]
            if message.text is not None:
                status = self._send_text(message.text, message.fd)
            elif message.fd is not None:
                status = self._send_fd(message.fd)
            else:
                status = _SendStatus.ERROR
            if status is _SendStatus.ERROR:
                return False
            if status is _SendStatus.DONE:
                self._outgoing.popleft()
            elif status is _SendStatus.STOPPED:
                return True
        return True

    def has_new_message_to_read(self) -> bool:
        return bool(self._incoming)

    def has_pending_message_to_send(self) -> bool:
        return bool(self._outgoing)

    def add_message_to_send(self, message: UnixSocketMessage) -> None:
        """Queue a message; ValueError if its text does not fit the length field."""
        if message.text is not None and len(message.text) > MAX_TEXT_LENGTH:
            raise ValueError(
                f"message text of {len(message.text)} bytes exceeds "
                f"{MAX_TEXT_LENGTH} bytes"
            )
        self._outgoing.append(message)

    def read_message(self) -> UnixSocketMessage:
        """Pop the oldest received message, or an empty one if none is queued."""
        if not self._incoming:
            return UnixSocketMessage()
        return self._incoming.popleft()

    def close(self) -> None:
        fd = self._take_fd()
        if fd is not None:
            _close_quietly(fd)
        self._sock.close()