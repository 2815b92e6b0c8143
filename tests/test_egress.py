import ipaddress

import pytest
from twisted.internet import defer
from twisted.internet.protocol import Factory
from twisted.internet.testing import MemoryReactor
from twisted.web.client import URI

import acmebouncer
from acmebouncer import (
    DIAL_FAMILY_AUTO,
    DestinationNotPermitted,
    GuardedEndpoint,
    GuardedEndpointFactory,
    MalformedDialTarget,
    check_backend,
    split_host_port,
)

ALLOWED = (ipaddress.ip_network("10.0.0.0/8"), ipaddress.ip_network("fd00::/8"))


def failure_of(d):
    failures = []
    d.addErrback(failures.append)
    assert failures, "expected the deferred to have failed"
    return failures[0]


class RecordingEndpoint:
    def __init__(self, reactor, host, port, timeout=30):
        self.reactor = reactor
        self.host = host
        self.port = port
        self.timeout = timeout
        self.factory = None

    def connect(self, protocolFactory):
        self.factory = protocolFactory
        return defer.succeed(self)


@pytest.fixture
def dialled(monkeypatch):
    """Replaces the client endpoint classes and records what would be dialled."""
    made = []

    def family(name):
        def build(*args, **kwargs):
            endpoint = RecordingEndpoint(*args, **kwargs)
            made.append((name, endpoint))
            return endpoint
        return build

    monkeypatch.setattr(acmebouncer, "TCP6ClientEndpoint", family("tcp6"))
    monkeypatch.setattr(acmebouncer, "TCP4ClientEndpoint", family("tcp4"))
    return made


class TestSplitHostPort:
    @pytest.mark.parametrize("address,expected", [
        ("10.1.2.3:443", ("10.1.2.3", "443")),
        ("[fd00::1]:80", ("fd00::1", "80")),
        ("example.com:80", ("example.com", "80")),
        (":80", ("", "80")),
    ])
    def test_valid(self, address, expected):
        assert split_host_port(address) == expected

    @pytest.mark.parametrize("address", [
        "10.1.2.3",
        "fd00::1:80",
        "[fd00::1]",
        "[fd00::1:80",
        "10.1.2.3:",
        "",
    ])
    def test_malformed(self, address):
        with pytest.raises(ValueError):
            split_host_port(address)


class TestCheckBackend:
    def test_permits_address_in_range(self):
        assert check_backend("10.1.2.3:443", ALLOWED) == ipaddress.ip_address("10.1.2.3")

    def test_permits_ipv6_address_in_range(self):
        assert check_backend("[fd12::5]:80", ALLOWED) == ipaddress.ip_address("fd12::5")

    def test_refuses_address_outside_every_range(self):
        with pytest.raises(DestinationNotPermitted, match="192.168.1.1:443"):
            check_backend("192.168.1.1:443", ALLOWED)

    def test_refuses_with_empty_allow_list(self):
        with pytest.raises(DestinationNotPermitted):
            check_backend("10.1.2.3:443", ())

    def test_ipv4_is_not_matched_against_ipv6_ranges(self):
        with pytest.raises(DestinationNotPermitted):
            check_backend("10.1.2.3:443", (ipaddress.ip_network("::/0"),))

    def test_ipv4_mapped_address_matches_ipv4_range(self):
        allowed = (ipaddress.ip_network("10.0.0.0/8"),)

        assert check_backend("[::ffff:10.1.2.3]:80", allowed) == ipaddress.ip_address("::ffff:10.1.2.3")
        with pytest.raises(DestinationNotPermitted):
            check_backend("[::ffff:192.168.1.1]:80", allowed)

    def test_ipv4_mapped_range_matches_ipv4_address(self):
        allowed = (ipaddress.ip_network("::ffff:10.0.0.0/104"),)

        assert check_backend("10.1.2.3:80", allowed) == ipaddress.ip_address("10.1.2.3")

    def test_rejects_hostnames(self):
        with pytest.raises(MalformedDialTarget, match="not a valid IP address"):
            check_backend("localhost:80", ALLOWED)

    def test_rejects_malformed_target(self):
        with pytest.raises(MalformedDialTarget):
            check_backend("10.1.2.3", ALLOWED)


class TestGuardedEndpoint:
    def test_refused_dial_never_reaches_the_network(self, dialled):
        endpoint = GuardedEndpoint(MemoryReactor(), "192.168.1.1:443", ALLOWED)

        failure = failure_of(endpoint.connect(Factory()))

        assert failure.check(DestinationNotPermitted)
        assert dialled == []

    def test_malformed_target_fails(self, dialled):
        endpoint = GuardedEndpoint(MemoryReactor(), "backend.internal:80", ALLOWED)

        assert failure_of(endpoint.connect(Factory())).check(MalformedDialTarget)
        assert dialled == []

    def test_permitted_dial_always_uses_ipv6(self, dialled):
        reactor = MemoryReactor()
        factory = Factory()

        GuardedEndpoint(reactor, "10.1.2.3:443", ALLOWED).connect(factory)

        [(family, endpoint)] = dialled
        assert family == "tcp6"
        assert (endpoint.reactor, endpoint.host, endpoint.port) == (reactor, "10.1.2.3", 443)
        assert endpoint.timeout == acmebouncer.DIAL_TIMEOUT
        assert endpoint.factory is factory

    def test_ipv4_mapped_backend_is_dialled_over_ipv6(self, dialled):
        GuardedEndpoint(MemoryReactor(), "[::ffff:10.1.2.3]:80", ALLOWED).connect(Factory())

        [(family, endpoint)] = dialled
        assert (family, endpoint.port) == ("tcp6", 80)
        assert ipaddress.ip_address(endpoint.host) == ipaddress.ip_address("::ffff:10.1.2.3")

    def test_auto_family_follows_the_address(self, dialled):
        GuardedEndpoint(MemoryReactor(), "10.1.2.3:80", ALLOWED, DIAL_FAMILY_AUTO).connect(Factory())
        GuardedEndpoint(MemoryReactor(), "[fd00::7]:80", ALLOWED, DIAL_FAMILY_AUTO).connect(Factory())

        assert [family for family, _ in dialled] == ["tcp4", "tcp6"]


class TestGuardedEndpointFactory:
    @pytest.mark.parametrize("url,target", [
        (b"http://10.0.0.5/.well-known/acme-challenge/x", "10.0.0.5:80"),
        (b"http://10.0.0.5:8080/", "10.0.0.5:8080"),
        (b"http://[fd00::5]:8080/", "[fd00::5]:8080"),
    ])
    def test_endpoint_targets_uri(self, url, target):
        factory = GuardedEndpointFactory(MemoryReactor(), ALLOWED)

        endpoint = factory.endpointForURI(URI.fromBytes(url))

        assert isinstance(endpoint, GuardedEndpoint)
        assert endpoint.target == target
        assert endpoint.allowed == ALLOWED
