# aaaa_filter/resolver.py
# Version: 1.0.0
# Query dispatch, AAAA suppression and upstream forwarding

import logging
import struct
from typing import Dict, Iterable, Optional, Tuple

from twisted.internet import defer, protocol, reactor, task
from twisted.names import dns
from twisted.names.error import DNSQueryTimeoutError

from aaaa_filter.config import normalize_domain
from aaaa_filter.constants import (
    DNS_DEFAULT_PORT,
    DNS_QUERY_TIMEOUT,
    DNS_TCP_MAX_SIZE,
    MIN_DNS_PACKET_SIZE,
    UPSTREAM_MAX_ATTEMPTS,
    UPSTREAM_RETRY_DELAY,
)
from aaaa_filter.metrics import (
    RESULT_DROPPED,
    RESULT_ERROR,
    RESULT_FILTERED,
    RESULT_FORWARDED,
    MetricsCollector,
)
from aaaa_filter.stats import QueryEvent
from aaaa_filter.validator import QueryValidationError, QueryValidator

logger = logging.getLogger(__name__)


def query_name(query: dns.Query) -> str:
    """Lower-case, trailing-dot form of the question name"""
    return normalize_domain(query.name.name.decode("ascii", "replace"))


def query_type_name(query_type: int) -> str:
    """Mnemonic for a query type, e.g. AAAA or TYPE65"""
    return dns.QUERY_TYPES.get(query_type) or dns.EXT_QUERIES.get(query_type) or f"TYPE{query_type}"


def emit_event(stats, event: QueryEvent):
    """Hand an event to the stats collector without affecting the reply path"""
    if stats is None:
        return
    try:
        stats.submit(event)
    except Exception as e:
        logger.error(f"Failed to queue stats event for {event.domain_name}: {e}")


class UpstreamProtocol(protocol.DatagramProtocol):
    """
    UDP exchange with the upstream resolver

    The client's message is sent as received, flags and EDNS OPT record
    included, under a fresh transaction id. Replies are matched on that id
    and on the upstream address.
    """

    def __init__(self, clock=None):
        self.clock = clock or reactor
        self.pending: Dict[int, Tuple[defer.Deferred, Tuple[str, int], object]] = {}

    def _start_listening(self, address: Tuple[str, int]):
        interface = "::" if ":" in address[0] else ""
        # Large enough for EDNS answers the client asked for
        reactor.listenUDP(0, self, interface=interface, maxPacketSize=DNS_TCP_MAX_SIZE)

    def pick_id(self) -> int:
        while True:
            msg_id = dns.randomSource()
            if msg_id not in self.pending:
                return msg_id

    def query(self, message: dns.Message, address: Tuple[str, int], timeout: float):
        """
        Send message to address

        Returns:
            Deferred firing with the upstream reply, or failing with
            DNSQueryTimeoutError after timeout seconds
        """
        if self.transport is None:
            self._start_listening(address)

        msg_id = self.pick_id()
        data = struct.pack("!H", msg_id) + message.toStr()[2:]
        try:
            self.transport.write(data, address)
        except Exception:
            return defer.fail()

        d = defer.Deferred()
        timeout_call = self.clock.callLater(timeout, self._timed_out, msg_id)
        self.pending[msg_id] = (d, tuple(address), timeout_call)
        return d

    def datagramReceived(self, data: bytes, addr: Tuple[str, int]):
        if len(data) < MIN_DNS_PACKET_SIZE:
            logger.debug(f"Ignoring short upstream datagram from {addr}")
            return

        msg_id = struct.unpack("!H", data[:2])[0]
        entry = self.pending.get(msg_id)
        if entry is None or tuple(addr[:2]) != entry[1]:
            logger.debug(f"Ignoring unexpected upstream reply {msg_id} from {addr}")
            return

        d, _, timeout_call = self.pending.pop(msg_id)
        timeout_call.cancel()

        response = dns.Message()
        try:
            response.fromStr(data)
        except Exception as e:
            d.errback(e)
            return
        d.callback(response)

    def _timed_out(self, msg_id: int):
        entry = self.pending.pop(msg_id, None)
        if entry is not None:
            entry[0].errback(DNSQueryTimeoutError(msg_id))


class RecursionForwarder:
    """Forwards queries to the single upstream resolver, retrying once"""

    def __init__(
        self,
        upstream_server: str,
        upstream_port: int = DNS_DEFAULT_PORT,
        stats=None,
        metrics: Optional[MetricsCollector] = None,
        timeout: float = DNS_QUERY_TIMEOUT,
        retry_delay: float = UPSTREAM_RETRY_DELAY,
        upstream: Optional[UpstreamProtocol] = None,
        clock=None,
    ):
        self.upstream_server = upstream_server
        self.upstream_port = upstream_port
        self.stats = stats
        self.metrics = metrics or MetricsCollector(enabled=False)
        self.timeout = timeout
        self.retry_delay = retry_delay
        self.clock = clock or reactor

        # Each query() is a single datagram; the retry policy lives in forward()
        self.upstream = upstream or UpstreamProtocol(self.clock)

    @defer.inlineCallbacks
    def forward(self, message: dns.Message):
        """
        Send the client's message upstream and return the reply

        Returns:
            Deferred firing with the upstream reply, re-addressed to the
            client's transaction id, or None when both attempts failed
        """
        query = message.queries[0]
        name = query_name(query)
        type_name = query_type_name(query.type)

        emit_event(self.stats, QueryEvent(name, type_name, filtered=False))

        for attempt in range(1, UPSTREAM_MAX_ATTEMPTS + 1):
            try:
                response = yield self.upstream.query(
                    message, (self.upstream_server, self.upstream_port), self.timeout
                )
                break
            except Exception as e:
                if attempt < UPSTREAM_MAX_ATTEMPTS:
                    logger.info(f"Retrying query for '{name}' after upstream error: {e}")
                    self.metrics.record_upstream_retry()
                    yield task.deferLater(self.clock, self.retry_delay, lambda: None)
                else:
                    logger.warning(
                        f"Client query failed for '{name}' ({type_name}) "
                        f"via {self.upstream_server}:{self.upstream_port}: {e}"
                    )
                    self.metrics.record_upstream_failure()
                    self.metrics.record_query(type_name, RESULT_DROPPED)
                    return None

        response.id = message.id
        self.metrics.record_query(type_name, RESULT_FORWARDED)
        logger.debug(f"Upstream answered {name} ({type_name}) with {len(response.answers)} records")
        return response


class AAAAFilter:
    """Answers AAAA queries with an empty reply, delegates everything else"""

    def __init__(
        self,
        forwarder: RecursionForwarder,
        stats=None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.forwarder = forwarder
        self.stats = stats
        self.metrics = metrics or MetricsCollector(enabled=False)

    def evaluate(self, message: dns.Message) -> defer.Deferred:
        query = message.queries[0]
        if query.type != dns.AAAA:
            return self.forwarder.forward(message)

        name = query_name(query)
        emit_event(self.stats, QueryEvent(name, "AAAA", filtered=True))
        self.metrics.record_query("AAAA", RESULT_FILTERED)
        logger.debug(f"Suppressed AAAA answer for {name}")
        return defer.succeed(self.create_empty_response(message))

    @staticmethod
    def create_empty_response(message: dns.Message) -> dns.Message:
        """NOERROR reply with the original id and question and no records"""
        response = dns.Message(
            id=message.id,
            answer=1,
            opCode=message.opCode,
            recDes=message.recDes,
            recAv=1,
            rCode=dns.OK,
        )
        response.checkingDisabled = message.checkingDisabled
        response.queries = list(message.queries)
        return response


class QueryDispatcher:
    """Routes each query to the AAAA filter or straight to the forwarder"""

    def __init__(
        self,
        filter_domains: Iterable[str],
        aaaa_filter: AAAAFilter,
        forwarder: RecursionForwarder,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.filter_domains = frozenset(normalize_domain(d) for d in filter_domains)
        self.aaaa_filter = aaaa_filter
        self.forwarder = forwarder
        self.metrics = metrics or MetricsCollector(enabled=False)

    def route(self, message: dns.Message):
        """Pick the handler for a message; exact name match only"""
        if not message.queries:
            return self._reject
        if query_name(message.queries[0]) in self.filter_domains:
            return self.aaaa_filter.evaluate
        return self.forwarder.forward

    def handle(self, message: dns.Message) -> defer.Deferred:
        """
        Handle one inbound query

        Returns:
            Deferred firing with the reply message, or None when no reply
            should be sent
        """
        d = defer.maybeDeferred(self.route(message), message)
        d.addErrback(self._handle_error, message)
        return d

    def _reject(self, message: dns.Message) -> dns.Message:
        logger.warning(f"Query {message.id} has no question, answering FORMERR")
        return QueryValidator.create_error_response(message, dns.EFORMAT)

    def _handle_error(self, failure, message: dns.Message) -> dns.Message:
        logger.error(f"Query {message.id} failed: {failure.getErrorMessage()}")
        if message.queries:
            self.metrics.record_query(query_type_name(message.queries[0].type), RESULT_ERROR)
        return QueryValidator.create_error_response(message, dns.ESERVER)


class DNSProxyProtocol(protocol.DatagramProtocol):
    """UDP DNS proxy protocol"""

    def __init__(self, dispatcher: QueryDispatcher):
        self.dispatcher = dispatcher

    def datagramReceived(self, data: bytes, addr: Tuple[str, int]):
        """Handle incoming DNS query"""
        try:
            message = QueryValidator.validate_request(data)
        except QueryValidationError as e:
            logger.warning(f"Invalid DNS query from {addr}: {e}")
            if e.message is not None:
                self._write(QueryValidator.create_error_response(e.message), addr)
            return

        query = message.queries[0]
        logger.debug(f"UDP Query from {addr}: {query.name} ({query_type_name(query.type)})")

        d = self.dispatcher.handle(message)
        d.addCallback(self._send_response, addr)
        d.addErrback(self._handle_error, addr)

    def _send_response(self, response: Optional[dns.Message], addr: Tuple[str, int]):
        """Send DNS response back to client"""
        if response is None:
            logger.debug(f"No reply sent to {addr}")
            return
        self._write(response, addr)

    def _write(self, response: dns.Message, addr: Tuple[str, int]):
        try:
            response_data = response.toStr()
            self.transport.write(response_data, addr)
            logger.debug(f"Sent UDP response to {addr} ({len(response_data)} bytes)")
        except Exception as e:
            logger.error(f"Failed to send UDP response to {addr}: {e}")

    def _handle_error(self, failure, addr: Tuple[str, int]):
        logger.error(f"UDP query handling failed for {addr}: {failure.getErrorMessage()}")


class DNSTCPProtocol(protocol.Protocol):
    """TCP DNS proxy protocol with 2-byte length framing"""

    def __init__(self, dispatcher: QueryDispatcher):
        self.dispatcher = dispatcher
        self.buffer = b""
        self.peer = None
        self.in_flight = 0

    def connectionMade(self):
        """Called when TCP connection is established"""
        self.peer = self.transport.getPeer()
        logger.debug(f"TCP connection from {self.peer.host}:{self.peer.port}")

    def dataReceived(self, data: bytes):
        """Handle incoming TCP DNS data"""
        self.buffer += data

        while len(self.buffer) >= 2:
            msg_length = struct.unpack("!H", self.buffer[:2])[0]
            if len(self.buffer) < 2 + msg_length:
                break

            dns_data = self.buffer[2 : 2 + msg_length]
            self.buffer = self.buffer[2 + msg_length :]
            self._process_dns_message(dns_data)

    def _process_dns_message(self, dns_data: bytes):
        """Process a complete DNS message"""
        try:
            message = QueryValidator.validate_request(dns_data, is_tcp=True)
        except QueryValidationError as e:
            logger.warning(f"Invalid TCP DNS query from {self.peer.host}: {e}")
            if e.message is not None:
                self._write(QueryValidator.create_error_response(e.message))
            self.transport.loseConnection()
            return

        query = message.queries[0]
        logger.debug(
            f"TCP Query from {self.peer.host}: {query.name} ({query_type_name(query.type)})"
        )

        self.in_flight += 1
        d = self.dispatcher.handle(message)
        d.addCallback(self._send_tcp_response)
        d.addErrback(self._handle_tcp_error)
        d.addBoth(self._query_done)

    def _send_tcp_response(self, response: Optional[dns.Message]):
        """Send DNS response back over TCP"""
        if response is not None:
            self._write(response)

    def _write(self, response: dns.Message):
        try:
            response_data = response.toStr()
            self.transport.write(struct.pack("!H", len(response_data)) + response_data)
            logger.debug(f"Sent TCP response to {self.peer.host} ({len(response_data)} bytes)")
        except Exception as e:
            logger.error(f"Failed to send TCP response to {self.peer.host}: {e}")

    def _handle_tcp_error(self, failure):
        logger.error(f"TCP query handling failed for {self.peer.host}: {failure.getErrorMessage()}")

    def _query_done(self, _):
        # Pipelined queries share the connection; close once all are answered
        self.in_flight -= 1
        if self.in_flight == 0 and not self.buffer:
            self.transport.loseConnection()


class DNSTCPFactory(protocol.Factory):
    """Factory for creating TCP DNS protocol instances"""

    def __init__(self, dispatcher: QueryDispatcher):
        self.dispatcher = dispatcher

    def buildProtocol(self, addr):
        """Build a new TCP protocol instance"""
        return DNSTCPProtocol(self.dispatcher)
