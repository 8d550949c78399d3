"""
Data models for the subscription lifecycle domain.

These type-safe data structures define clear contracts between the store,
the token codec and the handlers.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, Dict, Any


class SubscriberStatus(str, Enum):
    """Lifecycle state of a subscriber record. Only PENDING -> CONFIRMED."""
    PENDING = 'Pending'
    CONFIRMED = 'Confirmed'


class PromoteOutcome(str, Enum):
    """Result of a conditional Pending -> Confirmed promotion."""
    CONFIRMED = 'Confirmed'
    ALREADY_CONFIRMED = 'AlreadyConfirmed'
    STALE_GENERATION = 'StaleGeneration'
    NOT_FOUND = 'NotFound'


@dataclass
class SubscriberRecord:
    """
    One subscription of one subscriber to one site.

    Attributes:
        subscriber_id: Opaque identifier derived from the normalized email
        site_id: Branded site the subscription is for
        email: Normalized email address (delivery destination)
        status: PENDING until the confirmation link is used
        token_hash: Commitment to the current confirmation token
        token_generation: Incremented every time a new token is minted
        created_at: First add-request for this key
        last_requested_at: Most recent add-request for this key
        confirmed_at: Set once, on promotion to CONFIRMED
    """
    subscriber_id: str
    site_id: str
    email: str
    status: SubscriberStatus
    token_hash: str
    token_generation: int
    created_at: datetime
    last_requested_at: datetime
    confirmed_at: Optional[datetime] = None

    @property
    def is_confirmed(self) -> bool:
        return self.status == SubscriberStatus.CONFIRMED

    @property
    def is_pending(self) -> bool:
        return self.status == SubscriberStatus.PENDING

    def is_expired(self, cutoff: datetime) -> bool:
        """Check if this record is pending and was last requested before cutoff."""
        return self.is_pending and self.last_requested_at < cutoff


@dataclass
class PromoteResult:
    """Outcome of Store.promote_confirmed plus the record it observed."""
    outcome: PromoteOutcome
    record: Optional[SubscriberRecord] = None


@dataclass
class AddResult:
    """
    Result of an add-subscriber request.

    Attributes:
        record: Record as it stands after the request
        token_issued: True if a new confirmation token was minted and sent
    """
    record: SubscriberRecord
    token_issued: bool

    def __repr__(self) -> str:
        return (
            f"AddResult(site_id={self.record.site_id}, "
            f"generation={self.record.token_generation}, token_issued={self.token_issued})"
        )


@dataclass
class ConfirmResult:
    """Result of a successful confirm request."""
    record: SubscriberRecord
    already_confirmed: bool


@dataclass
class SiteCounts:
    """Per-site subscriber counts."""
    pending: int = 0
    confirmed: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {'pending': self.pending, 'confirmed': self.confirmed}


@dataclass
class ScrubSummary:
    """
    Counters for one scrub pass.

    Attributes:
        cutoff: Records last requested before this instant were eligible
        scanned: Keys returned by the expired-pending scan
        deleted: Records deleted (or that would be deleted in a dry run)
        skipped_confirmed: Confirmed between scan and recheck
        skipped_refreshed: Re-requested between scan and recheck
        skipped_missing: Already gone at recheck time
        failed: Per-key failures (logged and skipped)
        failed_keys: (subscriberId, siteId) of each failed key
    """
    cutoff: datetime
    dry_run: bool = False
    pages: int = 0
    scanned: int = 0
    deleted: int = 0
    skipped_confirmed: int = 0
    skipped_refreshed: int = 0
    skipped_missing: int = 0
    failed: int = 0
    failed_keys: list = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'cutoff': self.cutoff.isoformat(),
            'dryRun': self.dry_run,
            'pages': self.pages,
            'scanned': self.scanned,
            'deleted': self.deleted,
            'skippedConfirmed': self.skipped_confirmed,
            'skippedRefreshed': self.skipped_refreshed,
            'skippedMissing': self.skipped_missing,
            'failed': self.failed,
        }
