"""
pytest configuration for aaaa-filter tests

Puts the repository root on sys.path and provides shared DNS helpers
"""

import sys
from pathlib import Path

import pytest

# Add parent directory to path so tests can import aaaa_filter
repo_root = Path(__file__).parent.parent
if str(repo_root) not in sys.path:
    sys.path.insert(0, str(repo_root))

from twisted.names import dns  # noqa: E402


def _make_query(name, query_type=dns.A, msg_id=4321):
    """Build a recursive query message with one question"""
    message = dns.Message(id=msg_id, recDes=1)
    message.queries = [dns.Query(name, query_type, dns.IN)]
    return message


def _make_upstream_reply(query_message, address="192.0.2.10", msg_id=777):
    """Build what an upstream resolver would answer for query_message"""
    query = query_message.queries[0]
    reply = dns.Message(id=msg_id, answer=1, recDes=1, recAv=1)
    reply.queries = list(query_message.queries)
    reply.answers = [
        dns.RRHeader(query.name.name, dns.A, dns.IN, 300, dns.Record_A(address, 300))
    ]
    return reply


class RecordingStats:
    """Stands in for the stats collector and keeps submitted events"""

    def __init__(self):
        self.events = []

    def submit(self, event):
        self.events.append(event)


@pytest.fixture
def recording_stats():
    return RecordingStats()


@pytest.fixture
def make_query():
    return _make_query


@pytest.fixture
def make_upstream_reply():
    return _make_upstream_reply
