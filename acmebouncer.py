#!/usr/bin/env python3
# Plain-HTTP edge: 308 everything to https, relay ACME HTTP-01 challenges to allow-listed backends

from __future__ import annotations
import sys, logging, signal, ipaddress, argparse
from collections import namedtuple
from typing import Optional, Tuple
from urllib.parse import urlsplit, urlunsplit

from twisted.internet import reactor, defer
from twisted.internet.endpoints import TCP4ClientEndpoint, TCP6ClientEndpoint
from twisted.internet.error import CannotListenError
from twisted.internet.interfaces import IStreamClientEndpoint
from twisted.internet.protocol import Protocol
from twisted.python import log as twisted_log
from twisted.web import http
from twisted.web.client import Agent, HTTPConnectionPool, FileBodyProducer, ResponseDone
from twisted.web.http import PotentialDataLoss
from twisted.web.http_headers import Headers
from twisted.web.iweb import IAgentEndpointFactory
from twisted.web.resource import Resource
from twisted.web.server import Site, NOT_DONE_YET
from twisted.web.wsgi import WSGIResource
from zope.interface import Interface, implementer

from prometheus_client import Counter, make_wsgi_app

# ---------- Configuration ----------
LISTEN_ADDR = "0.0.0.0:80"
METRICS_PORT = 9100
ACME_CHALLENGE_PATH = b"/.well-known/acme-challenge"

DIAL_TIMEOUT = 5  # seconds
IDLE_CONN_TIMEOUT = 90
MAX_IDLE_CONNS_PER_HOST = 10

DIAL_FAMILY_IPV6 = "ipv6"
DIAL_FAMILY_AUTO = "auto"

# Connection-level headers; the outbound client writes its own framing.
HOP_BY_HOP_HEADERS = {
    b"connection",
    b"keep-alive",
    b"proxy-connection",
    b"transfer-encoding",
    b"te",
    b"trailer",
    b"upgrade",
    b"content-length",
}

logger = logging.getLogger("acmebouncer")

# ---------- Metrics ----------
REDIRECTS = Counter("acmebouncer_redirects", "Requests answered with a permanent redirect")
FORWARDS = Counter("acmebouncer_forwards", "Challenge requests forwarded upstream")
UPSTREAM_ERRORS = Counter("acmebouncer_upstream_errors", "Forwards that failed before a response arrived")
BODY_COPY_ERRORS = Counter("acmebouncer_body_copy_errors", "Upstream bodies that failed mid-copy")
DIALS_REFUSED = Counter("acmebouncer_dials_refused", "Dial attempts refused by the egress guard")
BYTES_RELAYED = Counter("acmebouncer_bytes_relayed", "Response body bytes relayed to callers")


# ---------- Errors ----------
class ConfigError(argparse.ArgumentTypeError):
    """Invalid startup configuration; argparse reports it and exits."""


class DialRejected(Exception):
    pass


class MalformedDialTarget(DialRejected, ValueError):
    pass


class DestinationNotPermitted(DialRejected):
    pass


# ---------- Address helpers ----------
def split_host_port(address: str) -> Tuple[str, str]:
    """
    Split ``host:port`` into its parts. IPv6 hosts must be bracketed
    (``[::1]:80``). Raises ValueError on anything else.
    """
    if address.startswith("["):
        end = address.find("]")
        if end < 0:
            raise ValueError(f"{address}: missing ']' in address")
        host, rest = address[1:end], address[end + 1:]
        if not rest.startswith(":"):
            raise ValueError(f"{address}: missing port in address")
        port = rest[1:]
    else:
        host, sep, port = address.rpartition(":")
        if not sep:
            raise ValueError(f"{address}: missing port in address")
        if ":" in host:
            raise ValueError(f"{address}: too many colons in address")
    if "[" in host or "]" in host or "]" in port:
        raise ValueError(f"{address}: unexpected bracket in address")
    if not port:
        raise ValueError(f"{address}: missing port in address")
    return host, port


def join_host_port(host: str, port) -> str:
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


def parse_port(value: str) -> int:
    if not value.isdigit() or not 0 <= int(value) <= 65535:
        raise ValueError(f"invalid port {value!r}")
    return int(value)


# ---------- Egress guard ----------
def unmap_address(ip):
    """``::ffff:a.b.c.d`` compares as ``a.b.c.d``."""
    if ip.version == 6 and ip.ipv4_mapped is not None:
        return ip.ipv4_mapped
    return ip


def unmap_network(network):
    if network.version == 6 and network.prefixlen >= 96:
        mapped = network.network_address.ipv4_mapped
        if mapped is not None:
            return ipaddress.ip_network(f"{mapped}/{network.prefixlen - 96}")
    return network


def check_backend(address: str, allowed):
    """
    Decide whether ``address`` (a ``host:port`` dial target) may be dialled.
    The host must already be an IP literal; nothing is resolved here.
    Returns the parsed IP on success.
    """
    try:
        host, _ = split_host_port(address)
    except ValueError as e:
        raise MalformedDialTarget(str(e))
    try:
        ip = ipaddress.ip_address(host)
    except ValueError:
        raise MalformedDialTarget(f"{host} is not a valid IP address")

    target = unmap_address(ip)
    for network in allowed:
        if target in unmap_network(network):
            return ip
    raise DestinationNotPermitted(f"{address} is not within an allowed backend cidr")


def dial_endpoint(reactor, ip, port: int, dial_family: str):
    # Containment was decided on ``ip`` as parsed; the family only picks the socket.
    if dial_family == DIAL_FAMILY_IPV6 or ip.version == 6:
        return TCP6ClientEndpoint(reactor, str(ip), port, timeout=DIAL_TIMEOUT)
    return TCP4ClientEndpoint(reactor, str(ip), port, timeout=DIAL_TIMEOUT)


@implementer(IStreamClientEndpoint)
class GuardedEndpoint:
    """
    Client endpoint that consults the egress guard each time a new
    connection is opened. Pooled connections never come back through here.
    """

    def __init__(self, reactor, target: str, allowed, dial_family: str = DIAL_FAMILY_IPV6):
        self.reactor = reactor
        self.target = target
        self.allowed = allowed
        self.dial_family = dial_family

    def connect(self, protocolFactory):
        try:
            ip = check_backend(self.target, self.allowed)
            port = parse_port(split_host_port(self.target)[1])
        except (DialRejected, ValueError) as e:
            DIALS_REFUSED.inc()
            logger.warning("Refusing to dial %s: %s", self.target, e)
            return defer.fail(e)
        return dial_endpoint(self.reactor, ip, port, self.dial_family).connect(protocolFactory)


@implementer(IAgentEndpointFactory)
class GuardedEndpointFactory:
    def __init__(self, reactor, allowed, dial_family: str = DIAL_FAMILY_IPV6):
        self.reactor = reactor
        self.allowed = tuple(allowed)
        self.dial_family = dial_family

    def endpointForURI(self, uri):
        host = uri.host.decode("ascii").strip("[]")
        return GuardedEndpoint(self.reactor, join_host_port(host, uri.port), self.allowed, self.dial_family)


def build_agent(reactor, config: "Config") -> Agent:
    pool = HTTPConnectionPool(reactor, persistent=True)
    pool.maxPersistentPerHost = MAX_IDLE_CONNS_PER_HOST
    pool.cachedConnectionTimeout = IDLE_CONN_TIMEOUT
    factory = GuardedEndpointFactory(reactor, config.backend_cidrs, config.dial_family)
    return Agent.usingEndpointFactory(reactor, factory, pool=pool)


# ---------- Forwarding ----------
class IForwarder(Interface):
    def forward(request):
        """
        Send C{request} upstream.

        @return: L{Deferred} firing with an L{twisted.web.iweb.IResponse},
            or failing if no response could be obtained.
        """


def request_target(request) -> Tuple[bytes, bytes, bytes]:
    """(netloc, path, query) of the request target; origin-form takes the Host header."""
    parts = urlsplit(request.uri)
    if parts.scheme and parts.netloc:
        return parts.netloc, parts.path, parts.query
    # origin-form: "//x/y" is a path here, never a network-path reference
    path, _, query = request.uri.partition(b"?")
    return request.getHeader(b"host") or b"", path, query


@implementer(IForwarder)
class AgentForwarder:
    def __init__(self, agent, upstream: Optional[Tuple[str, int]] = None):
        self.agent = agent
        self.upstream = upstream

    def upstream_url(self, request) -> bytes:
        netloc, path, query = request_target(request)
        if self.upstream is not None:
            netloc = join_host_port(*self.upstream).encode("ascii")
        if not netloc:
            raise ValueError("request names no host to forward to")
        return urlunsplit((b"http", netloc, path or b"/", query, b""))

    def forward(self, request):
        try:
            url = self.upstream_url(request)
        except ValueError as e:
            return defer.fail(e)

        headers = Headers()
        for name, values in request.requestHeaders.getAllRawHeaders():
            if name.lower() in HOP_BY_HOP_HEADERS:
                continue
            for value in values:
                headers.addRawHeader(name, value)

        body = None
        content = request.content
        if content is not None:
            content.seek(0, 2)
            if content.tell():
                content.seek(0)
                body = FileBodyProducer(content)

        logger.debug("Forwarding %s %s", request.method.decode("ascii", "replace"), url.decode("ascii", "replace"))
        return self.agent.request(request.method, url, headers, body)


# ---------- Router ----------
class ResponseRelay(Protocol):
    """Writes upstream body bytes to the caller as they arrive."""

    def __init__(self, relay: "ChallengeRelay"):
        self.relay = relay

    def connectionMade(self):
        if self.relay.disconnected:
            self.transport.stopProducing()

    def dataReceived(self, data: bytes):
        if self.relay.disconnected:
            return
        self.relay.request.write(data)
        BYTES_RELAYED.inc(len(data))

    def connectionLost(self, reason):
        self.relay.body_done(reason)


class ChallengeRelay:
    """
    One forwarded challenge request. Waits for the upstream response,
    copies status, headers and body onto the caller's request, and tears
    the upstream side down if the caller disconnects first.
    """

    def __init__(self, request, forwarder):
        self.request = request
        self.forwarder = forwarder
        self.upstream: Optional[defer.Deferred] = None
        self.body: Optional[ResponseRelay] = None
        self.disconnected = False
        self.finished = False

    def start(self):
        self.request.notifyFinish().addErrback(self._caller_gone)
        FORWARDS.inc()
        self.upstream = defer.maybeDeferred(self.forwarder.forward, self.request)
        self.upstream.addCallbacks(self._on_response, self._on_error)
        self.upstream.addErrback(self._on_relay_failure)
        return self.upstream

    def _caller_gone(self, reason):
        self.disconnected = True
        logger.debug("Caller went away: %s", reason.getErrorMessage())
        if self.body is not None:
            if self.body.transport is not None:
                self.body.transport.stopProducing()
        elif self.upstream is not None and not self.upstream.called:
            self.upstream.cancel()

    def _on_response(self, response):
        self.body = ResponseRelay(self)
        if not self.disconnected:
            request = self.request
            for name, values in response.headers.getAllRawHeaders():
                for value in values:
                    request.responseHeaders.addRawHeader(name, value)
            request.setResponseCode(response.code, response.phrase)
            # no text/html default on relayed responses
            request.defaultContentType = None
        response.deliverBody(self.body)

    def _on_error(self, failure):
        if self.disconnected:
            logger.debug("Upstream request abandoned: %s", failure.getErrorMessage())
            return
        UPSTREAM_ERRORS.inc()
        logger.error("Failed to send request to upstream: %s", failure.getErrorMessage())
        request = self.request
        if request.content is not None:
            request.content.close()
        request.setResponseCode(http.BAD_GATEWAY)
        request.setHeader(b"content-type", b"text/plain; charset=utf-8")
        request.setHeader(b"x-content-type-options", b"nosniff")
        request.write(b"Upstream error\n")
        self._finish()

    def _on_relay_failure(self, failure):
        logger.error("Relaying upstream response failed:\n%s", failure.getTraceback())
        if not self.disconnected:
            self._finish()

    def body_done(self, reason):
        if self.disconnected:
            return
        if not reason.check(ResponseDone, PotentialDataLoss):
            BODY_COPY_ERRORS.inc()
            logger.error("Failed to write response from upstream to client: %s", reason.getErrorMessage())
        self._finish()

    def _finish(self):
        if self.finished:
            return
        self.finished = True
        self.request.finish()


class ChallengeRouter(Resource):
    isLeaf = True

    def __init__(self, forwarder):
        Resource.__init__(self)
        self.forwarder = forwarder

    def render(self, request):
        netloc, path, query = request_target(request)
        if path.startswith(ACME_CHALLENGE_PATH):
            ChallengeRelay(request, self.forwarder).start()
            return NOT_DONE_YET
        REDIRECTS.inc()
        request.setResponseCode(http.PERMANENT_REDIRECT)
        request.setHeader(b"location", urlunsplit((b"https", netloc, path, query, b"")))
        request.defaultContentType = None
        return b""


# ---------- Config ----------
Config = namedtuple("Config", [
    "listen_host", "listen_port", "backend_cidrs", "upstream",
    "dial_family", "metrics_port", "log_level",
])


def parse_cidr(value: str):
    if "/" not in value:
        raise ConfigError(f"invalid CIDR address: {value}")
    try:
        return ipaddress.ip_network(value, strict=False)
    except ValueError as e:
        raise ConfigError(f"invalid CIDR address: {value}: {e}")


def parse_address(value: str) -> Tuple[str, int]:
    try:
        host, port = split_host_port(value)
        return host, parse_port(port)
    except ValueError as e:
        raise ConfigError(str(e))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="acmebouncer",
        description="Redirect plain HTTP to HTTPS, forwarding ACME HTTP-01 challenges to allow-listed backends.",
    )
    parser.add_argument("--listen", type=parse_address, default=LISTEN_ADDR,
                        help=f"listen address (default {LISTEN_ADDR})")
    parser.add_argument("--backend-cidr", type=parse_cidr, action="append", default=[],
                        dest="backend_cidrs", help="allowed backend network, repeatable")
    parser.add_argument("--upstream", type=parse_address, default=None,
                        help="forward challenges to this host:port instead of the request host")
    parser.add_argument("--dial-family", choices=(DIAL_FAMILY_IPV6, DIAL_FAMILY_AUTO), default=DIAL_FAMILY_IPV6,
                        help="socket family for backend connections (default ipv6)")
    parser.add_argument("--metrics-port", type=int, default=METRICS_PORT,
                        help=f"prometheus port, 0 disables (default {METRICS_PORT})")
    parser.add_argument("--log-level", default="INFO",
                        choices=("DEBUG", "INFO", "WARNING", "ERROR"))
    return parser


def parse_args(argv=None) -> Config:
    args = build_parser().parse_args(argv)
    host, port = args.listen
    return Config(
        listen_host=host,
        listen_port=port,
        backend_cidrs=tuple(args.backend_cidrs),
        upstream=args.upstream,
        dial_family=args.dial_family,
        metrics_port=args.metrics_port,
        log_level=args.log_level,
    )


# ---------- Process ----------
def configure_logging(level: str = "INFO"):
    logger.setLevel(level)
    if not logger.handlers:
        sh = logging.StreamHandler(sys.stdout)
        sh.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
        logger.addHandler(sh)
    twisted_log.PythonLoggingObserver(loggerName="acmebouncer.twisted").start()


def start_metrics_server(port: int):
    if not port:
        return None
    root = WSGIResource(reactor, reactor.getThreadPool(), make_wsgi_app())
    listener = reactor.listenTCP(port, Site(root))
    logger.info("Metrics listener started on port %d", port)
    return listener


def shutdown(*listeners):
    logger.info("Shutdown requested - no longer accepting connections")
    d = defer.gatherResults([defer.maybeDeferred(l.stopListening) for l in listeners if l is not None])
    d.addBoth(lambda _: reactor.stop())
    return d


def main(argv=None) -> int:
    config = parse_args(argv)
    configure_logging(config.log_level)
    if not config.backend_cidrs:
        logger.warning("No --backend-cidr given; every challenge forward will be refused")

    forwarder = AgentForwarder(build_agent(reactor, config), config.upstream)
    site = Site(ChallengeRouter(forwarder))
    listen_addr = join_host_port(config.listen_host, config.listen_port)
    try:
        port = reactor.listenTCP(config.listen_port, site, interface=config.listen_host)
        metrics = start_metrics_server(config.metrics_port)
    except CannotListenError as e:
        logger.error("HTTP server failed on %s: %s", listen_addr, e)
        return 1
    logger.info("Listening on %s", listen_addr)

    def on_signal(*args):
        reactor.callFromThread(shutdown, port, metrics)

    signal.signal(signal.SIGINT, on_signal)
    signal.signal(signal.SIGTERM, on_signal)
    reactor.run(installSignalHandlers=False)
    logger.info("acmebouncer stopped")
    return 0


if __name__ == "__main__":
    sys.exit(main())
