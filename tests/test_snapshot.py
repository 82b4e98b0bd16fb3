import pytest

from conftest import CHILD, PARENT
from delegsync.models import Endpoint, ResolutionError
from delegsync.snapshot import read_child_delegation, read_parent_delegation, read_snapshots


def serve_child(fake_dns):
    fake_dns.add(
        CHILD,
        "child.example.",
        "NS",
        answer=["child.example. 3600 IN NS ns1.child.example.", "child.example. 3600 IN NS ns.provider.test."],
    )
    fake_dns.add(CHILD, "ns1.child.example.", "A", answer=["ns1.child.example. 3600 IN A 192.0.2.1"])
    fake_dns.add(CHILD, "ns1.child.example.", "AAAA", answer=["ns1.child.example. 3600 IN AAAA 2001:db8::1"])


def test_child_snapshot_collects_ns_and_glue(fake_dns):
    serve_child(fake_dns)
    snapshot = read_child_delegation("child.example", Endpoint(CHILD), query=fake_dns)
    assert sorted(snapshot.ns_names()) == ["ns.provider.test.", "ns1.child.example."]
    assert [record.canonical_value() for record in snapshot.a_glue] == ["192.0.2.1"]
    assert [record.canonical_value() for record in snapshot.aaaa_glue] == ["2001:db8::1"]
    # out-of-bailiwick nameservers get no glue lookups
    assert not [call for call in fake_dns.calls if call[1] == "ns.provider.test."]


def test_child_snapshot_requires_authoritative_answer(fake_dns):
    fake_dns.add(CHILD, "child.example.", "NS", answer=["child.example. 3600 IN NS ns1.child.example."], aa=False)
    with pytest.raises(ResolutionError, match="authoritatively"):
        read_child_delegation("child.example.", Endpoint(CHILD), query=fake_dns)


def test_parent_snapshot_reads_referral(fake_dns):
    fake_dns.add(
        PARENT,
        "child.example.",
        "NS",
        authority=["child.example. 86400 IN NS ns1.child.example."],
        additional=["ns1.child.example. 86400 IN A 192.0.2.1"],
        aa=False,
    )
    fake_dns.add(
        PARENT,
        "ns1.child.example.",
        "A",
        authority=["child.example. 86400 IN NS ns1.child.example."],
        additional=["ns1.child.example. 86400 IN A 192.0.2.1"],
        aa=False,
    )
    snapshot = read_parent_delegation("child.example.", PARENT, query=fake_dns)
    assert snapshot.ns_names() == ["ns1.child.example."]
    assert [record.canonical_value() for record in snapshot.a_glue] == ["192.0.2.1"]
    assert snapshot.aaaa_glue == []


def test_error_rcode_raises_resolution_error(fake_dns):
    fake_dns.add(PARENT, "child.example.", "NS", rcode="SERVFAIL")
    with pytest.raises(ResolutionError, match="SERVFAIL"):
        read_parent_delegation("child.example.", Endpoint(PARENT), query=fake_dns)


def test_transport_failure_raises_resolution_error():
    def unreachable(message, server, timeout):
        raise OSError("network unreachable")

    with pytest.raises(ResolutionError, match="unreachable"):
        read_child_delegation("child.example.", Endpoint(CHILD), query=unreachable)


def test_missing_delegation_at_parent(fake_dns):
    fake_dns.add(PARENT, "child.example.", "NS")
    with pytest.raises(ResolutionError, match="no delegation"):
        read_parent_delegation("child.example.", Endpoint(PARENT), query=fake_dns)


def test_read_snapshots_returns_child_then_parent(fake_dns):
    serve_child(fake_dns)
    fake_dns.add(PARENT, "child.example.", "NS", authority=["child.example. 86400 IN NS ns1.child.example."])
    child, parent = read_snapshots("child.example.", Endpoint(CHILD), Endpoint(PARENT), query=fake_dns)
    assert len(child.ns) == 2
    assert len(parent.ns) == 1
    assert {call[0] for call in fake_dns.calls} == {CHILD, PARENT}


def test_host_name_server_is_refused_before_any_query():
    with pytest.raises(ResolutionError, match="ns1.example.net is not an IP address"):
        read_child_delegation("child.example.", Endpoint.parse("ns1.example.net:53"), timeout=0.1)
