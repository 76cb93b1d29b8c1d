import threading
import time
from dataclasses import dataclass

import pytest

from serfkit.event import QueryError
from serfkit.messages import (
    QUERY_FLAG_ACK,
    FilterTag,
    FilterType,
    MessageQuery,
    MessageQueryResponse,
    decode_message,
    encode_filter,
)
from serfkit.query import (
    NodeResponse,
    QueryParam,
    QueryResponse,
    default_query_timeout,
    k_random_members,
    should_process_query,
)


@dataclass(frozen=True)
class Member:
    name: str
    status: str


def _response(timeout=5.0, ack=False, n=4, **kw):
    q = MessageQuery(ltime=7, id=99, timeout=timeout, flags=QUERY_FLAG_ACK if ack else 0, **kw)
    return QueryResponse.from_message(n, q)


# default timeout


def test_default_query_timeout_single_member():
    assert default_query_timeout(0.2, 16, 1) == pytest.approx(3.2)


@pytest.mark.parametrize(
    "members, scale",
    [(0, 0), (1, 1), (9, 1), (10, 2), (99, 2), (100, 3)],
)
def test_default_query_timeout_scales_with_log(members, scale):
    assert default_query_timeout(1.0, 1, members) == scale


# filters


def test_query_params_encode_filters():
    q = QueryParam(
        filter_nodes=["foo", "bar"],
        filter_tags={"role": "^web", "datacenter": "aws$"},
    )
    filters = q.encode_filters()
    assert len(filters) == 3
    assert filters[0][0] == FilterType.NODE
    assert filters[1][0] == FilterType.TAG
    assert filters[2][0] == FilterType.TAG
    assert decode_message(filters[0][1:], list) == ["foo", "bar"]
    assert decode_message(filters[1][1:], FilterTag) == FilterTag(tag="role", expr="^web")


def test_query_params_no_filters():
    assert QueryParam().encode_filters() == []


def test_query_param_defaults():
    p = QueryParam()
    assert (p.filter_nodes, p.filter_tags, p.request_ack, p.relay_factor) == (None, None, False, 0)


TAGS = {"role": "webserver", "datacenter": "east-aws"}


def test_should_process_matching():
    q = QueryParam(
        filter_nodes=["foo", "bar", "zip"],
        filter_tags={"role": "^web", "datacenter": "aws$"},
    )
    assert should_process_query(q.encode_filters(), "zip", TAGS) is True


def test_should_process_omitted_node():
    q = QueryParam(filter_nodes=["foo", "bar"])
    assert should_process_query(q.encode_filters(), "zip", TAGS) is False


def test_should_process_missing_tag():
    q = QueryParam(filter_tags={"other": "cool"})
    assert should_process_query(q.encode_filters(), "zip", TAGS) is False


def test_should_process_bad_tag():
    q = QueryParam(filter_tags={"role": "db"})
    assert should_process_query(q.encode_filters(), "zip", TAGS) is False


def test_should_process_no_filters():
    assert should_process_query([], "zip", TAGS) is True


def test_should_process_unknown_filter_type():
    assert should_process_query([bytes([7]) + b"\x90"], "zip", TAGS) is False


def test_should_process_invalid_regex():
    filt = encode_filter(FilterType.TAG, FilterTag(tag="role", expr="(unclosed"))
    assert should_process_query([filt], "zip", TAGS) is False


def test_should_process_undecodable_node_filter():
    assert should_process_query([bytes([FilterType.NODE])], "zip", TAGS) is False


# k random members


def test_k_random_members():
    nodes = []
    for i in range(90):
        state = ["alive", "failed", "left"][i % 3]
        nodes.append(Member(name=f"test{i}", status=state))

    def filter_func(m):
        return m.name == "test0" or m.status != "alive"

    s1 = k_random_members(3, nodes, filter_func)
    s2 = k_random_members(3, nodes, filter_func)
    s3 = k_random_members(3, nodes, filter_func)

    assert s1 != s2
    assert s1 != s3
    assert s2 != s3
    for s in (s1, s2, s3):
        assert len(s) == 3
        assert len({m.name for m in s}) == 3
        for m in s:
            assert m.name != "test0"
            assert m.status == "alive"


def test_k_random_members_empty():
    assert k_random_members(3, [], None) == []


def test_k_random_members_small_pool_is_exhaustive():
    nodes = [Member("a", "alive"), Member("b", "alive")]
    picked = k_random_members(5, nodes, None)
    assert len(picked) <= 2
    assert len({m.name for m in picked}) == len(picked)


# query response


def test_from_message_copies_fields():
    before = time.time()
    resp = _response(timeout=5.0)
    assert resp.id == 99
    assert resp.ltime == 7
    assert before + 5.0 <= resp.deadline <= time.time() + 5.0
    assert resp.acks() is None
    assert resp.acked_nodes is None


def test_responses_buffer_and_drain_after_close():
    resp = _response()
    resp.send_response(NodeResponse(from_="a", payload=b"1"))
    resp.send_response(NodeResponse(from_="b", payload=b"2"))
    resp.close()
    assert list(resp.responses()) == [
        NodeResponse(from_="a", payload=b"1"),
        NodeResponse(from_="b", payload=b"2"),
    ]
    assert resp.responded_nodes == frozenset({"a", "b"})


def test_send_response_when_full_raises():
    resp = _response(n=1)
    resp.send_response(NodeResponse(from_="a"))
    with pytest.raises(QueryError, match="dropping"):
        resp.send_response(NodeResponse(from_="b"))
    assert resp.responded_nodes == frozenset({"a"})


def test_send_after_close_is_ignored():
    resp = _response()
    resp.close()
    resp.send_response(NodeResponse(from_="a"))
    assert list(resp.responses()) == []
    assert resp.responded_nodes == frozenset()


def test_close_is_idempotent_and_finishes():
    resp = _response()
    assert resp.finished() is False
    resp.close()
    resp.close()
    assert resp.finished() is True


def test_finished_after_deadline():
    resp = _response(timeout=-1.0)
    assert resp.finished() is True
    assert list(resp.responses()) == []


def test_responses_stop_at_deadline():
    resp = _response(timeout=0.05)
    start = time.time()
    assert list(resp.responses()) == []
    assert time.time() - start < 2.0


def test_acks_delivered():
    resp = _response(ack=True)
    resp.send_ack(MessageQueryResponse(from_="node1", flags=QUERY_FLAG_ACK))
    resp.close()
    assert list(resp.acks()) == ["node1"]
    assert resp.acked_nodes == frozenset({"node1"})


def test_ack_without_request_raises():
    resp = _response(ack=False)
    with pytest.raises(QueryError):
        resp.send_ack(MessageQueryResponse(from_="node1"))


def test_responses_from_another_thread():
    resp = _response(n=10)

    def producer():
        for i in range(3):
            resp.send_response(NodeResponse(from_=f"n{i}"))
        resp.close()

    t = threading.Thread(target=producer)
    t.start()
    got = [r.from_ for r in resp.responses()]
    t.join()
    assert got == ["n0", "n1", "n2"]