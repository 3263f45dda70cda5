"""Status codes, errors and the request/response messages of the daemon."""

from __future__ import annotations

import enum
import json
from dataclasses import dataclass, field
from typing import Any, TypeVar, Union


class StatusCode(enum.IntEnum):
    """Canonical status codes."""

    OK = 0
    CANCELLED = 1
    UNKNOWN = 2
    INVALID_ARGUMENT = 3
    DEADLINE_EXCEEDED = 4
    NOT_FOUND = 5
    ALREADY_EXISTS = 6
    PERMISSION_DENIED = 7
    RESOURCE_EXHAUSTED = 8
    FAILED_PRECONDITION = 9
    ABORTED = 10
    OUT_OF_RANGE = 11
    UNIMPLEMENTED = 12
    INTERNAL = 13
    UNAVAILABLE = 14
    DATA_LOSS = 15
    UNAUTHENTICATED = 16

    @classmethod
    def from_raw(cls, raw: int) -> "StatusCode":
        try:
            return cls(raw)
        except ValueError:
            return cls.UNKNOWN


class RxdmError(Exception):
    """An error carrying a canonical status code."""

    def __init__(self, code: StatusCode, message: str = "") -> None:
        super().__init__(message)
        self.code = StatusCode(code)
        self.message = message

    def __str__(self) -> str:
        return f"{self.code.name}: {self.message}"


class BufferOpType(enum.IntEnum):
    UNSPECIFIED = 0
    REG_BUFFER = 1
    DEREG_BUFFER = 2


def _get(data: dict[str, Any], key: str, kind: type, default: Any = None) -> Any:
    if key not in data:
        return default
    value = data[key]
    if kind is int and isinstance(value, bool):
        raise ValueError(f"field {key!r} must be an integer")
    if not isinstance(value, kind):
        raise ValueError(f"field {key!r} must be of type {kind.__name__}")
    return value


def _without_none(values: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in values.items() if v is not None}


@dataclass
class RpcStatus:
    """A status as carried on the wire."""

    code: int = StatusCode.OK
    message: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"code": int(self.code), "message": self.message}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RpcStatus":
        return cls(_get(data, "code", int, 0), _get(data, "message", str, ""))


def _status_field(data: dict[str, Any]) -> RpcStatus:
    raw = _get(data, "status", dict, {})
    return RpcStatus.from_dict(raw)


@dataclass
class BufferOpReq:
    fts_magic_value: int | None = None
    op_type: Union[BufferOpType, int] = BufferOpType.UNSPECIFIED
    size: int | None = None
    reg_handle: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return _without_none(
            {
                "fts_magic_value": self.fts_magic_value,
                "op_type": int(self.op_type),
                "size": self.size,
                "reg_handle": self.reg_handle,
            }
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BufferOpReq":
        raw_op = _get(data, "op_type", int, 0)
        try:
            op_type: Union[BufferOpType, int] = BufferOpType(raw_op)
        except ValueError:
            op_type = raw_op
        return cls(
            fts_magic_value=_get(data, "fts_magic_value", int),
            op_type=op_type,
            size=_get(data, "size", int),
            reg_handle=_get(data, "reg_handle", int),
        )


@dataclass
class BufferOpResp:
    status: RpcStatus = field(default_factory=RpcStatus)
    reg_handle: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return _without_none(
            {"status": self.status.to_dict(), "reg_handle": self.reg_handle}
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BufferOpResp":
        return cls(status=_status_field(data), reg_handle=_get(data, "reg_handle", int))


@dataclass
class GetNicIpReq:
    gpu_pci: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return _without_none({"gpu_pci": self.gpu_pci})

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "GetNicIpReq":
        return cls(gpu_pci=_get(data, "gpu_pci", str))


@dataclass
class GetNicIpResp:
    status: RpcStatus = field(default_factory=RpcStatus)
    nic_ip: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"status": self.status.to_dict(), "nic_ip": self.nic_ip}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "GetNicIpResp":
        return cls(status=_status_field(data), nic_ip=_get(data, "nic_ip", str, ""))


@dataclass
class GetNicMappingReq:
    def to_dict(self) -> dict[str, Any]:
        return {}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "GetNicMappingReq":
        return cls()


@dataclass
class GetNicMappingResp:
    """Maps each GPU PCI address to the IPs of its closest NICs."""

    pci_nic_map: dict[str, list[str]] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"pci_nic_map": {k: list(v) for k, v in self.pci_nic_map.items()}}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "GetNicMappingResp":
        raw = _get(data, "pci_nic_map", dict, {})
        mapping: dict[str, list[str]] = {}
        for gpu, ips in raw.items():
            if not isinstance(ips, list) or not all(isinstance(ip, str) for ip in ips):
                raise ValueError(f"closest NIC IPs for {gpu!r} must be strings")
            mapping[gpu] = list(ips)
        return cls(pci_nic_map=mapping)


Message = Union[
    BufferOpReq,
    BufferOpResp,
    GetNicIpReq,
    GetNicIpResp,
    GetNicMappingReq,
    GetNicMappingResp,
]
M = TypeVar("M", bound=Message)


def status_to_rpc(error: RxdmError | None) -> RpcStatus:
    """Convert an error, or None for success, into a wire status."""
    if error is None:
        return RpcStatus(StatusCode.OK, "")
    return RpcStatus(int(error.code), error.message)


def error_from_rpc(status: RpcStatus) -> RxdmError | None:
    """Convert a wire status into an error, or None when it is OK."""
    if status.code == StatusCode.OK:
        return None
    return RxdmError(StatusCode.from_raw(status.code), status.message)


def encode_message(message: Message) -> bytes:
    """Serialise a message to bytes."""
    return json.dumps(message.to_dict(), separators=(",", ":"), sort_keys=True).encode(
        "utf-8"
    )


def decode_message(message_type: type[M], data: bytes | str) -> M:
    """Parse bytes into a message of the given type; ValueError if malformed."""
    if isinstance(data, bytes):
        data = data.decode("utf-8")
    obj = json.loads(data)
    if not isinstance(obj, dict):
        raise ValueError("message must be a JSON object")
    return message_type.from_dict(obj)