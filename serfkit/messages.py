"""Gossip message types and their msgpack wire encoding."""

from __future__ import annotations

import enum
import ipaddress
from dataclasses import dataclass, field
from typing import Any, Callable, ClassVar

import msgpack


class MessageType(enum.IntEnum):
    """Type byte that prefixes every gossip message."""

    LEAVE = 0
    JOIN = 1
    PUSH_PULL = 2
    USER_EVENT = 3
    QUERY = 4
    QUERY_RESPONSE = 5
    CONFLICT_RESPONSE = 6
    KEY_REQUEST = 7
    KEY_RESPONSE = 8
    RELAY = 9


QUERY_FLAG_ACK = 1 << 0
QUERY_FLAG_NO_BROADCAST = 1 << 1


class FilterType(enum.IntEnum):
    """Type byte that prefixes an encoded query filter."""

    NODE = 0
    TAG = 1


class MessageDecodeError(ValueError):
    """Raised when a buffer cannot be decoded into a message."""


def _as_str(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("utf-8", "surrogateescape")
    raise TypeError(f"expected a string, got {type(value).__name__}")


def _as_bytes(value: Any) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    if isinstance(value, str):
        return value.encode("utf-8", "surrogateescape")
    raise TypeError(f"expected bytes, got {type(value).__name__}")


def _as_int(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise TypeError(f"expected an integer, got {type(value).__name__}")
    return value


def _as_bool(value: Any) -> bool:
    if not isinstance(value, bool):
        raise TypeError(f"expected a boolean, got {type(value).__name__}")
    return value


def _as_list(value: Any) -> list:
    if not isinstance(value, list):
        raise TypeError(f"expected an array, got {type(value).__name__}")
    return value


def _as_dict(value: Any) -> dict:
    if not isinstance(value, dict):
        raise TypeError(f"expected a map, got {type(value).__name__}")
    return value


def _to_wire(obj: Any) -> Any:
    if isinstance(obj, _WireStruct):
        return obj.to_wire()
    if isinstance(obj, (list, tuple)):
        return [_to_wire(item) for item in obj]
    if isinstance(obj, dict):
        return {key: _to_wire(value) for key, value in obj.items()}
    return obj


_DECODERS: dict[str, Callable[[Any], Any]] = {
    "int": _as_int,
    "str": _as_str,
    "bytes": _as_bytes,
    "bool": _as_bool,
    "duration": lambda v: _as_int(v) / 1e9,
    "str_list": lambda v: [_as_str(item) for item in _as_list(v)],
    "bytes_list": lambda v: [_as_bytes(item) for item in _as_list(v)],
    "str_int_map": lambda v: {_as_str(k): _as_int(x) for k, x in _as_dict(v).items()},
    "raw": lambda v: v,
}

_ENCODERS: dict[str, Callable[[Any], Any]] = {
    "duration": lambda v: int(round(v * 1e9)),
    "str_list": list,
    "bytes_list": lambda v: [bytes(item) for item in v],
    "str_int_map": dict,
    "bytes": bytes,
    "raw": _to_wire,
}


class _WireStruct:
    """Mixin mapping dataclass attributes to msgpack map keys."""

    _wire: ClassVar[tuple[tuple[str, str, str], ...]] = ()

    def to_wire(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        for attr, wire, kind in self._wire:
            value = getattr(self, attr)
            encoder = _ENCODERS.get(kind)
            out[wire] = encoder(value) if encoder is not None and value is not None else value
        return out

    @classmethod
    def from_wire(cls, data: Any):
        if not isinstance(data, dict):
            raise MessageDecodeError(
                f"expected a map for {cls.__name__}, got {type(data).__name__}"
            )
        try:
            lookup = {_as_str(key): value for key, value in data.items()}
        except TypeError as exc:
            raise MessageDecodeError(f"bad map key: {exc}") from exc
        kwargs: dict[str, Any] = {}
        for attr, wire, kind in cls._wire:
            if wire not in lookup:
                continue
            value = lookup[wire]
            if value is None:
                if kind == "bytes":
                    kwargs[attr] = None
                continue
            try:
                kwargs[attr] = _DECODERS[kind](value)
            except (TypeError, ValueError) as exc:
                raise MessageDecodeError(f"field {wire}: {exc}") from exc
        return cls(**kwargs)


@dataclass
class MessageJoin(_WireStruct):
    """Broadcast after joining to associate a node with a Lamport time."""

    ltime: int = 0
    node: str = ""

    _wire = (("ltime", "LTime", "int"), ("node", "Node", "str"))


@dataclass
class MessageLeave(_WireStruct):
    """Broadcast to signal the intent to leave."""

    ltime: int = 0
    node: str = ""
    prune: bool = False

    _wire = (
        ("ltime", "LTime", "int"),
        ("node", "Node", "str"),
        ("prune", "Prune", "bool"),
    )


@dataclass
class MessagePushPull(_WireStruct):
    """Full state exchange between two nodes."""

    ltime: int = 0
    status_ltimes: dict[str, int] = field(default_factory=dict)
    left_members: list[str] = field(default_factory=list)
    event_ltime: int = 0
    events: list[Any] = field(default_factory=list)
    query_ltime: int = 0

    _wire = (
        ("ltime", "LTime", "int"),
        ("status_ltimes", "StatusLTimes", "str_int_map"),
        ("left_members", "LeftMembers", "str_list"),
        ("event_ltime", "EventLTime", "int"),
        ("events", "Events", "raw"),
        ("query_ltime", "QueryLTime", "int"),
    )


@dataclass
class MessageUserEvent(_WireStruct):
    """A user-generated event; ``cc`` means the event may be coalesced."""

    ltime: int = 0
    name: str = ""
    payload: bytes | None = None
    cc: bool = False

    _wire = (
        ("ltime", "LTime", "int"),
        ("name", "Name", "str"),
        ("payload", "Payload", "bytes"),
        ("cc", "CC", "bool"),
    )


@dataclass
class MessageQuery(_WireStruct):
    """A query broadcast; ``timeout`` is in seconds."""

    ltime: int = 0
    id: int = 0
    addr: bytes | None = None
    port: int = 0
    source_node: str = ""
    filters: list[bytes] = field(default_factory=list)
    flags: int = 0
    relay_factor: int = 0
    timeout: float = 0.0
    name: str = ""
    payload: bytes | None = None

    _wire = (
        ("ltime", "LTime", "int"),
        ("id", "ID", "int"),
        ("addr", "Addr", "bytes"),
        ("port", "Port", "int"),
        ("source_node", "SourceNode", "str"),
        ("filters", "Filters", "bytes_list"),
        ("flags", "Flags", "int"),
        ("relay_factor", "RelayFactor", "int"),
        ("timeout", "Timeout", "duration"),
        ("name", "Name", "str"),
        ("payload", "Payload", "bytes"),
    )

    def ack(self) -> bool:
        """True if the sender asked for delivery acknowledgements."""
        return bool(self.flags & QUERY_FLAG_ACK)

    def no_broadcast(self) -> bool:
        """True if the query must not be re-broadcast."""
        return bool(self.flags & QUERY_FLAG_NO_BROADCAST)


@dataclass
class FilterTag(_WireStruct):
    """A regular expression to apply to one tag."""

    tag: str = ""
    expr: str = ""

    _wire = (("tag", "Tag", "str"), ("expr", "Expr", "str"))


@dataclass
class MessageQueryResponse(_WireStruct):
    """A response, or an ack, to a query."""

    ltime: int = 0
    id: int = 0
    from_: str = ""
    flags: int = 0
    payload: bytes | None = None

    _wire = (
        ("ltime", "LTime", "int"),
        ("id", "ID", "int"),
        ("from_", "From", "str"),
        ("flags", "Flags", "int"),
        ("payload", "Payload", "bytes"),
    )

    def ack(self) -> bool:
        """True if this is an acknowledgement rather than a response."""
        return bool(self.flags & QUERY_FLAG_ACK)


@dataclass
class RelayHeader(_WireStruct):
    """Final destination of a relayed message."""

    dest_addr: tuple[str, int] = ("", 0)
    dest_name: str = ""

    def to_wire(self) -> dict[str, Any]:
        host, port = self.dest_addr
        ip = ipaddress.ip_address(host).packed if host else None
        return {
            "DestAddr": {"IP": ip, "Port": port, "Zone": ""},
            "DestName": self.dest_name,
        }

    @classmethod
    def from_wire(cls, data: Any) -> RelayHeader:
        try:
            mapping = {_as_str(k): v for k, v in _as_dict(data).items()}
            addr = {_as_str(k): v for k, v in _as_dict(mapping.get("DestAddr") or {}).items()}
            raw_ip = addr.get("IP")
            host = ""
            if raw_ip:
                ip = ipaddress.ip_address(_as_bytes(raw_ip))
                if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
                    ip = ip.ipv4_mapped
                host = str(ip)
            port = _as_int(addr.get("Port", 0))
            name = _as_str(mapping.get("DestName") or "")
        except (TypeError, ValueError) as exc:
            raise MessageDecodeError(f"bad relay header: {exc}") from exc
        return cls(dest_addr=(host, port), dest_name=name)


def _pack(obj: Any) -> bytes:
    return msgpack.packb(_to_wire(obj), use_bin_type=True)


def _unpack_one(buf: bytes) -> tuple[Any, int]:
    unpacker = msgpack.Unpacker(
        raw=False, unicode_errors="surrogateescape", strict_map_key=False
    )
    unpacker.feed(bytes(buf))
    try:
        obj = unpacker.unpack()
    except msgpack.OutOfData as exc:
        raise MessageDecodeError("message is truncated") from exc
    except (msgpack.UnpackException, ValueError) as exc:
        raise MessageDecodeError(str(exc)) from exc
    return obj, unpacker.tell()


_PLAIN_CONVERTERS: dict[type, Callable[[Any], Any]] = {
    list: _as_list,
    dict: _as_dict,
    str: _as_str,
    bytes: _as_bytes,
    int: _as_int,
    bool: _as_bool,
}


def decode_message(buf: bytes, cls: type) -> Any:
    """Decode a msgpack body (without its type byte) into ``cls``."""
    obj, _ = _unpack_one(buf)
    if isinstance(cls, type) and issubclass(cls, _WireStruct):
        return cls.from_wire(obj)
    converter = _PLAIN_CONVERTERS.get(cls)
    if converter is None:
        raise TypeError(f"cannot decode into {cls!r}")
    try:
        return converter(obj)
    except TypeError as exc:
        raise MessageDecodeError(str(exc)) from exc


def encode_message(msg_type: MessageType, msg: Any) -> bytes:
    """Encode a message prefixed with its type byte."""
    return bytes([int(msg_type)]) + _pack(msg)


def encode_relay_message(
    msg_type: MessageType, addr: tuple[str, int], node_name: str, msg: Any
) -> bytes:
    """Wrap a message so that a peer forwards it to ``addr``."""
    header = RelayHeader(dest_addr=addr, dest_name=node_name)
    return (
        bytes([MessageType.RELAY])
        + _pack(header)
        + bytes([int(msg_type)])
        + _pack(msg)
    )


def decode_relay_message(buf: bytes) -> tuple[RelayHeader, bytes]:
    """Split a relay message into its header and the wrapped message."""
    if not buf or buf[0] != MessageType.RELAY:
        raise MessageDecodeError("not a relay message")
    obj, used = _unpack_one(buf[1:])
    header = RelayHeader.from_wire(obj)
    return header, bytes(buf[1 + used:])


def encode_filter(filter_type: FilterType, filt: Any) -> bytes:
    """Encode a query filter prefixed with its type byte."""
    return bytes([int(filter_type)]) + _pack(filt)