# aaaa_filter/validator.py
# Version: 1.0.0
# Inbound query validation

"""
Query Validator

Rejects datagrams that cannot be handled safely before they reach the
dispatcher: short or oversized packets, unparsable messages, responses sent
to the listening port and messages without exactly one question.
"""

import logging
import struct
from typing import Optional

from twisted.names import dns

from aaaa_filter.constants import (
    DNS_TCP_MAX_SIZE,
    DNS_UDP_MAX_SIZE,
    MAX_DNS_QUESTIONS,
    MIN_DNS_PACKET_SIZE,
)

logger = logging.getLogger(__name__)


class QueryValidationError(Exception):
    """Inbound query cannot be handled

    message carries the parsed message when the packet got that far, so the
    caller can still send a correlated FORMERR.
    """

    def __init__(self, reason: str, message: Optional[dns.Message] = None):
        super().__init__(reason)
        self.message = message


class QueryValidator:
    """Validates inbound DNS queries"""

    @staticmethod
    def validate_packet_size(data: bytes, is_tcp: bool = False) -> None:
        """
        Validate DNS packet size

        Raises:
            QueryValidationError: If packet size is invalid
        """
        packet_size = len(data)

        if packet_size < MIN_DNS_PACKET_SIZE:
            raise QueryValidationError(
                f"DNS packet too small: {packet_size} bytes (minimum {MIN_DNS_PACKET_SIZE})"
            )

        max_size = DNS_TCP_MAX_SIZE if is_tcp else DNS_UDP_MAX_SIZE
        if packet_size > max_size:
            raise QueryValidationError(
                f"DNS packet too large: {packet_size} bytes (maximum {max_size})"
            )

    @staticmethod
    def validate_request(data: bytes, is_tcp: bool = False) -> dns.Message:
        """
        Validate an incoming DNS request

        Args:
            data: Raw DNS request data
            is_tcp: Whether this came in over TCP

        Returns:
            Parsed DNS message with exactly one question

        Raises:
            QueryValidationError: If the request is invalid
        """
        QueryValidator.validate_packet_size(data, is_tcp)

        message = dns.Message()
        try:
            message.fromStr(data)
        except Exception as e:
            raise QueryValidationError(f"Failed to parse DNS message: {e}")

        # fromStr stops quietly at the end of the data, leaving sections short
        counts = struct.unpack("!4H", data[4:MIN_DNS_PACKET_SIZE])
        parsed = (
            len(message.queries),
            len(message.answers),
            len(message.authority),
            len(message.additional),
        )
        if parsed != counts:
            raise QueryValidationError(
                f"Truncated DNS message: header declares {counts}, found {parsed}"
            )

        if message.answer:
            raise QueryValidationError("Received a DNS response, not a query")

        if not message.queries:
            raise QueryValidationError("DNS request has no queries", message)

        if len(message.queries) > MAX_DNS_QUESTIONS:
            raise QueryValidationError(
                f"Too many questions in DNS query: {len(message.queries)} "
                f"(maximum {MAX_DNS_QUESTIONS})",
                message,
            )

        return message

    @staticmethod
    def create_error_response(message: dns.Message, error_code: int = dns.EFORMAT) -> dns.Message:
        """
        Create an error reply correlated to the original request

        Args:
            message: Original request
            error_code: DNS rcode to return

        Returns:
            DNS error response message
        """
        error_response = dns.Message(
            id=message.id, answer=1, opCode=message.opCode, recDes=message.recDes, rCode=error_code
        )
        error_response.queries = list(message.queries)
        return error_response
