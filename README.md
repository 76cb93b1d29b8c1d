# serfkit

Building blocks for gossip-based cluster membership. `serfkit` gives you the
pieces a cluster agent needs to agree on ordering, exchange compact msgpack
messages, describe membership and user events, and run filtered queries
across members.

## Installation

```
pip install serfkit
```

For running the test suite:

```
pip install "serfkit[test]"
pytest
```

## What is inside

| Module | Purpose |
| --- | --- |
| `serfkit.lamport` | `LamportClock`, a thread-safe logical clock. |
| `serfkit.messages` | `MessageType`, `FilterType`, the message dataclasses (`MessageJoin`, `MessageLeave`, `MessagePushPull`, `MessageUserEvent`, `MessageQuery`, `MessageQueryResponse`, `FilterTag`, `RelayHeader`) and the msgpack codec: `encode_message`, `decode_message`, `encode_relay_message`, `decode_relay_message`, `encode_filter`. |
| `serfkit.event` | `EventType`, `MemberEvent`, `UserEvent`, `Query` and `QueryError`. |
| `serfkit.query` | `QueryParam`, `QueryResponse`, `NodeResponse`, `default_query_timeout`, `should_process_query` and `k_random_members`. |

## Quick tour

### Lamport clocks

```python
from serfkit.lamport import LamportClock

clock = LamportClock()
clock.time()        # 0
clock.increment()   # 1
clock.witness(41)   # a peer has seen time 41
clock.time()        # 42: one ahead of what was witnessed
clock.witness(30)   # older values are ignored
clock.time()        # 42
```

### Wire messages

Every message is a single type byte followed by a msgpack map body.

```python
from serfkit.messages import MessageLeave, MessageType, decode_message, encode_message

raw = encode_message(MessageType.LEAVE, MessageLeave(node="foo"))
raw[0]                                  # 0, the LEAVE type byte
decode_message(raw[1:], MessageLeave)   # MessageLeave(ltime=0, node='foo', prune=False)
```

`decode_message` also accepts plain `list`, `dict`, `str`, `bytes`, `int`
and `bool` as the target; a malformed or mistyped body raises
`MessageDecodeError` (a `ValueError`).

`encode_relay_message(msg_type, (host, port), node_name, msg)` wraps a
message behind a `RelayHeader` naming its final destination;
`decode_relay_message` returns the header and the wrapped message bytes
(type byte included).

`MessageQuery.ack()`, `MessageQuery.no_broadcast()` and
`MessageQueryResponse.ack()` read the query flag bits. A query's `timeout`
is held in seconds and carried on the wire in nanoseconds.

### Events

`EventType` covers `MEMBER_JOIN`, `MEMBER_LEAVE`, `MEMBER_FAILED`,
`MEMBER_UPDATE`, `MEMBER_REAP`, `USER` and `QUERY`; `str()` gives labels
such as `"member-join"` and `"user"`.

- `MemberEvent(type, members)`: `str()` raises `ValueError` if the type is
  not a member event type.
- `UserEvent(ltime, name, payload, coalesce)`: `str()` is `"user-event: <name>"`.
- `Query`: `str()` is `"query: <name>"`. It is answered with
  `respond(buf)`, which encodes a `MessageQueryResponse` and hands it to the
  `send_to_address(address, node_name, raw)` callable, then to the optional
  `relay(relay_factor, (host, port), node_name, response)` callable.
  A response is refused with `QueryError` when it exceeds
  `response_size_limit` (1024 bytes by default), when one has already been
  sent (`deadline` is then `None`), when the `deadline` timestamp has
  passed, or when no `send_to_address` was given.

### Queries

`QueryParam` describes who should answer a query: a list of node names and
a mapping of tag names to regular expressions. `QueryParam.encode_filters()`
turns them into wire filters, and
`should_process_query(filters, node_name, tags)` decides on the receiving
side whether a node matches all of them (tag expressions are searched with
`re.search`; an undecodable filter, a bad regex or an unknown filter type
means no).

`default_query_timeout(gossip_interval, timeout_mult, num_members)` is
`gossip_interval * timeout_mult * ceil(log10(num_members + 1))`.

`QueryResponse` collects responses and acknowledgements for one query.
Build one with `QueryResponse.from_message(n, query)`, deliver with
`send_response(NodeResponse(...))` and `send_ack(response)` (a full buffer,
or an ack when none were requested, raises `QueryError`), and read with the
`responses()` and `acks()` iterators, which stop once the query is closed
with `close()` or its deadline passes. `finished()`, `responded_nodes` and
`acked_nodes` report its state.

`k_random_members(k, members, filter_func)` picks up to `k` members with
distinct `name` attributes at random, skipping those for which
`filter_func` returns True; it makes at most `3 * len(members)` draws.

## What it does not do

`serfkit` has no network transport, failure detector or running agent: it
does not send gossip, keep a member list, broadcast queries or answer
internal cluster queries by itself, and it does not manage encryption
keyrings. You supply the transport through the callables on `Query` and
drive the pieces from your own agent.