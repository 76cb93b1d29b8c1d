"""Query parameters, filter evaluation and collection of query responses."""

from __future__ import annotations

import logging
import math
import random
import re
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator, Mapping, Sequence, TypeVar

from .event import QueryError
from .messages import (
    FilterTag,
    FilterType,
    MessageDecodeError,
    MessageQuery,
    MessageQueryResponse,
    decode_message,
    encode_filter,
)

logger = logging.getLogger(__name__)

_DROPPED = "serf: Failed to deliver query response, dropping"

M = TypeVar("M")


@dataclass
class QueryParam:
    """Options for a query; ``timeout`` is in seconds, 0 means the default."""

    filter_nodes: list[str] | None = None
    filter_tags: dict[str, str] | None = None
    request_ack: bool = False
    relay_factor: int = 0
    timeout: float = 0.0

    def encode_filters(self) -> list[bytes]:
        """Convert the filters into their wire format."""
        filters: list[bytes] = []
        if self.filter_nodes:
            filters.append(encode_filter(FilterType.NODE, list(self.filter_nodes)))
        for tag, expr in (self.filter_tags or {}).items():
            filters.append(encode_filter(FilterType.TAG, FilterTag(tag=tag, expr=expr)))
        return filters


def default_query_timeout(
    gossip_interval: float, timeout_mult: int, num_members: int
) -> float:
    """Default timeout: gossip_interval * timeout_mult * ceil(log10(N+1))."""
    scale = math.ceil(math.log10(num_members + 1))
    return gossip_interval * timeout_mult * scale


@dataclass(frozen=True)
class NodeResponse:
    """A single response from one node."""

    from_: str
    payload: bytes | None = None


class QueryResponse:
    """Collects acks and responses for one outstanding query."""

    def __init__(
        self,
        *,
        deadline: float,
        capacity: int,
        id: int = 0,
        ltime: int = 0,
        request_ack: bool = False,
    ) -> None:
        self.deadline = deadline
        self.id = id
        self.ltime = ltime
        self._capacity = capacity
        self._cond = threading.Condition()
        self._closed = False
        self._response_queue: deque[NodeResponse] = deque()
        self._responded: set[str] = set()
        self._ack_queue: deque[str] | None = deque() if request_ack else None
        self._acked: set[str] | None = set() if request_ack else None

    @classmethod
    def from_message(cls, n: int, query: MessageQuery) -> QueryResponse:
        """Build a collector able to buffer ``n`` responses for ``query``."""
        return cls(
            deadline=time.time() + query.timeout,
            capacity=n,
            id=query.id,
            ltime=query.ltime,
            request_ack=query.ack(),
        )

    def close(self) -> None:
        """Stop accepting deliveries; readers drain what is buffered."""
        with self._cond:
            if self._closed:
                return
            self._closed = True
            self._cond.notify_all()

    def finished(self) -> bool:
        """True once closed or past the deadline."""
        with self._cond:
            return self._closed or time.time() > self.deadline

    @property
    def responded_nodes(self) -> frozenset[str]:
        """Names of nodes whose response was delivered."""
        with self._cond:
            return frozenset(self._responded)

    @property
    def acked_nodes(self) -> frozenset[str] | None:
        """Names of nodes that acked, or None if acks were not requested."""
        with self._cond:
            return None if self._acked is None else frozenset(self._acked)

    def send_response(self, response: NodeResponse) -> None:
        """Deliver a response; raises QueryError when the buffer is full."""
        with self._cond:
            if self._closed:
                return
            if len(self._response_queue) >= self._capacity:
                raise QueryError(_DROPPED)
            self._response_queue.append(response)
            self._responded.add(response.from_)
            self._cond.notify_all()

    def send_ack(self, response: MessageQueryResponse) -> None:
        """Deliver an ack; raises QueryError when it cannot be buffered."""
        with self._cond:
            if self._closed:
                return
            if self._ack_queue is None or self._acked is None:
                raise QueryError(_DROPPED)
            if len(self._ack_queue) >= self._capacity:
                raise QueryError(_DROPPED)
            self._ack_queue.append(response.from_)
            self._acked.add(response.from_)
            self._cond.notify_all()

    def responses(self) -> Iterator[NodeResponse]:
        """Yield responses until the query is closed or past its deadline."""
        return self._drain(self._response_queue)

    def acks(self) -> Iterator[str] | None:
        """Yield acking node names, or None if acks were not requested."""
        if self._ack_queue is None:
            return None
        return self._drain(self._ack_queue)

    def _drain(self, queue: deque) -> Iterator[Any]:
        while True:
            with self._cond:
                while not queue and not self._closed:
                    remaining = self.deadline - time.time()
                    if remaining <= 0:
                        break
                    self._cond.wait(remaining)
                if not queue:
                    return
                item = queue.popleft()
            yield item


def _node_matches(body: bytes, node_name: str) -> bool:
    nodes = decode_message(body, list)
    for node in nodes:
        if isinstance(node, (bytes, bytearray)):
            node = bytes(node).decode("utf-8", "surrogateescape")
        if node == node_name:
            return True
    return False


def should_process_query(
    filters: Sequence[bytes], node_name: str, tags: Mapping[str, str] | None
) -> bool:
    """Check whether a node with this name and tags passes every filter."""
    tags = tags or {}
    for filt in filters:
        if not filt:
            logger.warning("serf: query has an empty filter")
            return False
        kind = filt[0]
        body = bytes(filt[1:])
        if kind == FilterType.NODE:
            try:
                if not _node_matches(body, node_name):
                    return False
            except MessageDecodeError as exc:
                logger.warning("serf: failed to decode filterNodeType: %s", exc)
                return False
        elif kind == FilterType.TAG:
            try:
                tag_filter = decode_message(body, FilterTag)
            except MessageDecodeError as exc:
                logger.warning("serf: failed to decode filterTagType: %s", exc)
                return False
            try:
                matched = re.search(tag_filter.expr, tags.get(tag_filter.tag, ""))
            except re.error as exc:
                logger.warning(
                    "serf: failed to compile filter regex (%s): %s", tag_filter.expr, exc
                )
                return False
            if matched is None:
                return False
        else:
            logger.warning("serf: query has unrecognized filter type: %d", kind)
            return False
    return True


def k_random_members(
    k: int,
    members: Sequence[M],
    filter_func: Callable[[M], bool] | None = None,
) -> list[M]:
    """Pick up to ``k`` distinct members at random, skipping filtered ones.

    ``filter_func`` returns True for members to exclude. Members are told
    apart by their ``name`` attribute.
    """
    n = len(members)
    chosen: list[M] = []
    names: set[str] = set()
    for _ in range(3 * n):
        if len(chosen) >= k:
            break
        member = members[random.randrange(n)]
        if filter_func is not None and filter_func(member):
            continue
        name = getattr(member, "name")
        if name in names:
            continue
        names.add(name)
        chosen.append(member)
    return chosen