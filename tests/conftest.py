"""
Pytest configuration and fixtures for all tests.
"""

import copy
import os
import sys
import threading
from datetime import datetime, timezone

import pytest

# Add src to Python path before any imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '../src'))

# Set up test environment variables before importing any modules
os.environ.setdefault('AWS_DEFAULT_REGION', 'us-east-1')
os.environ.setdefault('AWS_ACCESS_KEY_ID', 'testing')
os.environ.setdefault('AWS_SECRET_ACCESS_KEY', 'testing')
os.environ.setdefault('TABLE', 'SubscriberTable-test')
os.environ.setdefault('TOKEN_SECRET', 'test-token-secret')
os.environ.setdefault('ENVIRONMENT', 'test')
os.environ.setdefault('LOG_LEVEL', 'INFO')

from domain.errors import GenerationConflict  # noqa: E402
from domain.models import (  # noqa: E402
    PromoteOutcome,
    PromoteResult,
    SiteCounts,
    SubscriberRecord,
    SubscriberStatus,
)
from domain.subscription_service import SubscriptionService  # noqa: E402


class InMemorySubscriberStore:
    """
    Store double with the same conditional semantics as SubscriberStore.

    A single lock makes every operation atomic, standing in for DynamoDB's
    per-item conditional writes.
    """

    def __init__(self):
        self.items = {}
        self._lock = threading.Lock()
        self.fail_get_for = set()
        self.page_size_seen = None

    def get(self, subscriber_id, site_id):
        with self._lock:
            if (subscriber_id, site_id) in self.fail_get_for:
                raise RuntimeError("injected read failure")
            record = self.items.get((subscriber_id, site_id))
            return copy.deepcopy(record)

    def upsert_pending(self, subscriber_id, site_id, email, token_hash, generation, now):
        with self._lock:
            key = (subscriber_id, site_id)
            current = self.items.get(key)
            if generation == 0:
                if current is not None:
                    raise GenerationConflict("exists")
                record = SubscriberRecord(
                    subscriber_id=subscriber_id,
                    site_id=site_id,
                    email=email,
                    status=SubscriberStatus.PENDING,
                    token_hash=token_hash,
                    token_generation=0,
                    created_at=now,
                    last_requested_at=now
                )
            else:
                if current is None or not current.is_pending or current.token_generation != generation - 1:
                    raise GenerationConflict("changed")
                record = copy.deepcopy(current)
                record.token_hash = token_hash
                record.token_generation = generation
                record.last_requested_at = now
                record.email = email
            self.items[key] = record
            return copy.deepcopy(record)

    def promote_confirmed(self, subscriber_id, site_id, expected_generation, now):
        with self._lock:
            current = self.items.get((subscriber_id, site_id))
            if current is None:
                return PromoteResult(PromoteOutcome.NOT_FOUND)
            if current.is_confirmed:
                return PromoteResult(PromoteOutcome.ALREADY_CONFIRMED, copy.deepcopy(current))
            if current.token_generation != expected_generation:
                return PromoteResult(PromoteOutcome.STALE_GENERATION, copy.deepcopy(current))
            current.status = SubscriberStatus.CONFIRMED
            current.confirmed_at = now
            return PromoteResult(PromoteOutcome.CONFIRMED, copy.deepcopy(current))

    def delete(self, subscriber_id, site_id, expired_before=None):
        with self._lock:
            key = (subscriber_id, site_id)
            current = self.items.get(key)
            if current is None:
                return expired_before is None
            if expired_before is not None and not current.is_expired(expired_before):
                return False
            del self.items[key]
            return True

    def scan_pages(self, cutoff, page_size=100):
        self.page_size_seen = page_size
        with self._lock:
            keys = [key for key, record in sorted(self.items.items()) if record.is_expired(cutoff)]
        for start in range(0, len(keys), page_size):
            yield keys[start:start + page_size]

    def scan_pending_expired_before(self, cutoff, page_size=100):
        for page in self.scan_pages(cutoff, page_size):
            yield from page

    def count_by_site(self, site_id=None):
        counts = {}
        with self._lock:
            for record in self.items.values():
                if site_id and record.site_id != site_id:
                    continue
                site_counts = counts.setdefault(record.site_id, SiteCounts())
                if record.is_confirmed:
                    site_counts.confirmed += 1
                else:
                    site_counts.pending += 1
        return counts


class RecordingNotifier:
    """Notifier double that records (record, token) pairs."""

    def __init__(self):
        self.sent = []
        self._lock = threading.Lock()

    def send_confirmation_request(self, record, token):
        with self._lock:
            self.sent.append((record, token))
        return True

    @property
    def tokens(self):
        return [token for _, token in self.sent]


@pytest.fixture(scope="session", autouse=True)
def setup_test_environment():
    """Set up test environment variables for all tests."""
    # Environment variables are already set above
    yield


@pytest.fixture
def store():
    return InMemorySubscriberStore()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def service(store, notifier):
    return SubscriptionService(store=store, notifier=notifier)


@pytest.fixture
def t0():
    """Fixed reference time for lifecycle scenarios."""
    return datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)
