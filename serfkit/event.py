"""Events delivered by the cluster: member changes, user events and queries."""

from __future__ import annotations

import enum
import ipaddress
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable

from .messages import MessageQueryResponse, MessageType, encode_message

DEFAULT_QUERY_RESPONSE_SIZE_LIMIT = 1024


class EventType(enum.IntEnum):
    """Kinds of events that may be delivered."""

    MEMBER_JOIN = 0
    MEMBER_LEAVE = 1
    MEMBER_FAILED = 2
    MEMBER_UPDATE = 3
    MEMBER_REAP = 4
    USER = 5
    QUERY = 6

    @property
    def label(self) -> str:
        return _LABELS[self]

    def __str__(self) -> str:
        return _LABELS[self]


_LABELS = {
    EventType.MEMBER_JOIN: "member-join",
    EventType.MEMBER_LEAVE: "member-leave",
    EventType.MEMBER_FAILED: "member-failed",
    EventType.MEMBER_UPDATE: "member-update",
    EventType.MEMBER_REAP: "member-reap",
    EventType.USER: "user",
    EventType.QUERY: "query",
}

_MEMBER_EVENT_TYPES = frozenset(
    {
        EventType.MEMBER_JOIN,
        EventType.MEMBER_LEAVE,
        EventType.MEMBER_FAILED,
        EventType.MEMBER_UPDATE,
        EventType.MEMBER_REAP,
    }
)


class QueryError(Exception):
    """Raised when a query response cannot be sent."""


@dataclass
class MemberEvent:
    """A member-related event; coalescing may group several members."""

    type: EventType
    members: list[Any] = field(default_factory=list)

    def event_type(self) -> EventType:
        return self.type

    def __str__(self) -> str:
        if self.type not in _MEMBER_EVENT_TYPES:
            raise ValueError(f"unknown event type: {int(self.type)}")
        return str(self.type)


@dataclass
class UserEvent:
    """An event triggered by a user rather than by membership."""

    ltime: int = 0
    name: str = ""
    payload: bytes | None = None
    coalesce: bool = False

    def event_type(self) -> EventType:
        return EventType.USER

    def __str__(self) -> str:
        return f"user-event: {self.name}"


SendToAddress = Callable[[str, str, bytes], None]
RelayResponse = Callable[[int, "tuple[str, int]", str, MessageQueryResponse], None]


@dataclass(eq=False)
class Query:
    """A query received from the cluster, answerable once before its deadline.

    ``deadline`` is a wall-clock timestamp; it becomes ``None`` once a
    response has been sent. ``send_to_address`` delivers raw bytes to an
    address and node name; ``relay`` forwards copies through other members.
    """

    ltime: int = 0
    name: str = ""
    payload: bytes | None = None
    id: int = 0
    addr: bytes = b""
    port: int = 0
    source_node: str = ""
    deadline: float | None = None
    relay_factor: int = 0
    node_name: str = ""
    response_size_limit: int = DEFAULT_QUERY_RESPONSE_SIZE_LIMIT
    send_to_address: SendToAddress | None = field(default=None, repr=False)
    relay: RelayResponse | None = field(default=None, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def event_type(self) -> EventType:
        return EventType.QUERY

    def __str__(self) -> str:
        return f"query: {self.name}"

    def create_response(self, buf: bytes | None) -> MessageQueryResponse:
        """Build the response message carrying ``buf``."""
        return MessageQueryResponse(
            ltime=self.ltime, id=self.id, from_=self.node_name, payload=buf
        )

    def check_response_size(self, resp: bytes) -> None:
        """Raise QueryError if an encoded response is over the size limit."""
        if len(resp) > self.response_size_limit:
            raise QueryError(
                f"response exceeds limit of {self.response_size_limit} bytes"
            )

    def _destination(self) -> tuple[str, str]:
        if not self.addr:
            return "", f":{self.port}"
        try:
            ip = ipaddress.ip_address(bytes(self.addr))
        except ValueError as exc:
            raise QueryError(f"invalid source address: {exc}") from exc
        if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
            ip = ip.ipv4_mapped
        host = str(ip)
        if ip.version == 6:
            return host, f"[{host}]:{self.port}"
        return host, f"{host}:{self.port}"

    def respond_with_message_and_response(
        self, raw: bytes, resp: MessageQueryResponse
    ) -> None:
        """Send an already encoded response and relay copies of it."""
        self.check_response_size(raw)
        with self._lock:
            if self.deadline is None:
                raise QueryError("response already sent")
            if time.time() > self.deadline:
                raise QueryError("response is past the deadline")
            if self.send_to_address is None:
                raise QueryError("no transport to send the response")

            host, address = self._destination()
            try:
                self.send_to_address(address, self.source_node, raw)
            except QueryError:
                raise
            except Exception as exc:
                raise QueryError(str(exc)) from exc

            if self.relay is not None:
                try:
                    self.relay(self.relay_factor, (host, self.port), self.source_node, resp)
                except QueryError:
                    raise
                except Exception as exc:
                    raise QueryError(str(exc)) from exc

            self.deadline = None

    def respond(self, buf: bytes | None) -> None:
        """Send ``buf`` as this node's response to the query."""
        resp = self.create_response(buf)
        try:
            raw = encode_message(MessageType.QUERY_RESPONSE, resp)
        except (TypeError, ValueError) as exc:
            raise QueryError(f"failed to format response: {exc}") from exc
        try:
            self.respond_with_message_and_response(raw, resp)
        except QueryError as exc:
            raise QueryError(f"failed to respond to key query: {exc}") from exc