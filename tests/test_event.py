import time

import pytest

from serfkit.event import EventType, MemberEvent, Query, QueryError, UserEvent
from serfkit.messages import MessageQueryResponse, MessageType, decode_message


@pytest.mark.parametrize(
    "event_type,label",
    [
        (EventType.MEMBER_JOIN, "member-join"),
        (EventType.MEMBER_LEAVE, "member-leave"),
        (EventType.MEMBER_FAILED, "member-failed"),
        (EventType.MEMBER_UPDATE, "member-update"),
        (EventType.MEMBER_REAP, "member-reap"),
    ],
)
def test_member_event(event_type, label):
    event = MemberEvent(type=event_type, members=[])
    assert event.event_type() == event_type
    assert str(event) == label


def test_member_event_rejects_user_type():
    event = MemberEvent(type=EventType.USER)
    assert event.event_type() == EventType.USER
    with pytest.raises(ValueError):
        str(event)


def test_user_event():
    event = UserEvent(name="test", payload=b"foobar")
    assert event.event_type() == EventType.USER
    assert str(event) == "user-event: test"


def test_query_basics():
    query = Query(ltime=42, name="update", payload=b"abcd1234")
    assert query.event_type() == EventType.QUERY
    assert str(query) == "query: update"


@pytest.mark.parametrize(
    "value,label",
    [
        (0, "member-join"),
        (1, "member-leave"),
        (2, "member-failed"),
        (3, "member-update"),
        (4, "member-reap"),
        (5, "user"),
        (6, "query"),
    ],
)
def test_event_type_strings(value, label):
    assert str(EventType(value)) == label


def test_unknown_event_type():
    with pytest.raises(ValueError):
        EventType(100)


def _query(sent, relayed=None, **kwargs):
    params = dict(
        ltime=7,
        name="ping",
        id=3,
        addr=bytes([127, 0, 0, 1]),
        port=7946,
        source_node="origin",
        deadline=time.time() + 60,
        node_name="local",
        send_to_address=lambda addr, name, raw: sent.append((addr, name, raw)),
    )
    if relayed is not None:
        params["relay"] = lambda *args: relayed.append(args)
    params.update(kwargs)
    return Query(**params)


def test_respond_sends_and_clears_deadline():
    sent = []
    relayed = []
    query = _query(sent, relayed, relay_factor=2)
    query.respond(b"pong")

    assert len(sent) == 1
    addr, name, raw = sent[0]
    assert addr == "127.0.0.1:7946"
    assert name == "origin"
    assert raw[0] == MessageType.QUERY_RESPONSE
    expected = MessageQueryResponse(ltime=7, id=3, from_="local", payload=b"pong")
    assert decode_message(raw[1:], MessageQueryResponse) == expected
    assert relayed == [(2, ("127.0.0.1", 7946), "origin", expected)]
    assert query.deadline is None


def test_respond_twice_fails():
    sent = []
    query = _query(sent)
    query.respond(b"one")
    with pytest.raises(QueryError, match="already sent"):
        query.respond(b"two")
    assert len(sent) == 1


def test_respond_past_deadline():
    sent = []
    query = _query(sent, deadline=time.time() - 1)
    with pytest.raises(QueryError, match="past the deadline"):
        query.respond(b"late")
    assert sent == []


def test_respond_too_large():
    sent = []
    query = _query(sent, response_size_limit=10)
    with pytest.raises(QueryError, match="exceeds limit of 10 bytes"):
        query.respond(b"x" * 20)
    assert sent == []


def test_check_response_size():
    query = Query(response_size_limit=4)
    query.check_response_size(b"abcd")
    with pytest.raises(QueryError, match="exceeds limit of 4 bytes"):
        query.check_response_size(b"abcde")


def test_respond_ipv6_address():
    sent = []
    query = _query(sent, addr=bytes(15) + b"\x01")
    query.respond(None)
    assert sent[0][0] == "[::1]:7946"


def test_transport_failure_keeps_deadline():
    def failing(addr, name, raw):
        raise OSError("unreachable")

    deadline = time.time() + 60
    query = Query(
        name="ping",
        addr=bytes([10, 0, 0, 1]),
        port=1,
        deadline=deadline,
        send_to_address=failing,
    )
    with pytest.raises(QueryError, match="unreachable"):
        query.respond(b"x")
    assert query.deadline == deadline


def test_create_response():
    query = Query(ltime=5, id=9, node_name="me")
    assert query.create_response(b"data") == MessageQueryResponse(
        ltime=5, id=9, from_="me", payload=b"data"
    )