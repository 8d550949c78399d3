"""
Subscription lifecycle - core business logic.

This module handles the two request-driven transitions of a subscriber record:
1. Add: create or refresh a Pending record, mint a token, queue a confirmation
2. Confirm: verify a token and promote the record to Confirmed

All coordination between concurrent requests happens through the store's
conditional writes; this class holds no mutable state between calls.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from .errors import (
    GenerationConflict,
    InvalidToken,
    NotFound,
    StaleGeneration,
    StoreUnavailable,
    ValidationError,
)
from .models import AddResult, ConfirmResult, PromoteOutcome
from services import email as email_service
from services import notifier as notifier_service
from services import tokens as token_codec
from services.dynamodb import SubscriberStore

logger = logging.getLogger(__name__)

# Compare-and-swap attempts before giving up on a contended key
MAX_UPSERT_ATTEMPTS = 5


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SubscriptionService:
    """
    Handles add-subscriber and confirm-subscriber requests.

    Args:
        store: Subscriber store (defaults to the DynamoDB-backed store)
        codec: Token codec module/object exposing issue(), verify(), generation_of()
        notifier: Notifier module/object exposing send_confirmation_request()
    """

    def __init__(self, store=None, codec=None, notifier=None):
        self.store = store if store is not None else SubscriberStore()
        self.codec = codec if codec is not None else token_codec
        self.notifier = notifier if notifier is not None else notifier_service

    def add_subscriber(
        self,
        email: str,
        site_id: str,
        now: Optional[datetime] = None
    ) -> AddResult:
        """
        Create or refresh a pending subscription and queue a confirmation request.

        Args:
            email: Address as submitted
            site_id: Target site
            now: Request time (defaults to current UTC time)

        Returns:
            AddResult: token_issued is False when the record was already confirmed

        Raises:
            ValidationError: Malformed email or site ID (store not touched)
            StoreUnavailable: Transient store failure, or the key stayed contended
            NotifierUnavailable: Confirmation request could not be queued
        """
        normalized = email_service.normalize_email(email)
        site_id = email_service.validate_site_id(site_id)
        subscriber_id = email_service.derive_subscriber_id(normalized)
        now = now or utc_now()

        logger.info(f"Add subscriber: email={email_service.mask_email(normalized)}, site={site_id}")

        for attempt in range(1, MAX_UPSERT_ATTEMPTS + 1):
            current = self.store.get(subscriber_id, site_id)

            if current is not None and current.is_confirmed:
                logger.info(f"Already confirmed, nothing to do: site={site_id}")
                return AddResult(record=current, token_issued=False)

            generation = 0 if current is None else current.token_generation + 1
            issued = self.codec.issue(subscriber_id, site_id, generation)

            try:
                record = self.store.upsert_pending(
                    subscriber_id,
                    site_id,
                    normalized,
                    issued.token_hash,
                    generation,
                    now
                )
            except GenerationConflict:
                logger.info(f"Concurrent update on key, re-reading (attempt {attempt}/{MAX_UPSERT_ATTEMPTS})")
                continue

            logger.info(
                f"{'Created' if generation == 0 else 'Refreshed'} pending subscription: "
                f"site={site_id}, generation={generation}"
            )
            self.notifier.send_confirmation_request(record, issued.token)
            return AddResult(record=record, token_issued=True)

        logger.error(f"Gave up after {MAX_UPSERT_ATTEMPTS} conflicting writes: site={site_id}")
        raise StoreUnavailable("Subscription is being updated concurrently, try again")

    def confirm_subscriber(
        self,
        site_id: str,
        token: str,
        subscriber_id: Optional[str] = None,
        email: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> ConfirmResult:
        """
        Verify a confirmation token and promote the record to Confirmed.

        Either subscriber_id or email identifies the subscriber.

        Returns:
            ConfirmResult: already_confirmed is True for idempotent link reuse

        Raises:
            ValidationError: Missing identity, site or token
            NotFound: No record for the key
            InvalidToken: Token does not match the record's current token
            StaleGeneration: Token was superseded while this request ran
            StoreUnavailable: Transient store failure (not retried here)
        """
        site_id = email_service.validate_site_id(site_id)
        subscriber_id = self._resolve_subscriber_id(subscriber_id, email)
        if not token:
            raise ValidationError("token is required")
        now = now or utc_now()

        record = self.store.get(subscriber_id, site_id)
        if record is None:
            logger.info(f"Confirm for unknown subscription: site={site_id}")
            raise NotFound("Subscription not found")

        if not self.codec.verify(token, record):
            logger.info(f"Confirm with invalid token: site={site_id}, current_generation={record.token_generation}")
            raise InvalidToken("Token does not match")

        result = self.store.promote_confirmed(
            subscriber_id,
            site_id,
            self.codec.generation_of(token),
            now
        )

        if result.outcome == PromoteOutcome.CONFIRMED:
            logger.info(f"Subscription confirmed: site={site_id}, generation={result.record.token_generation}")
            return ConfirmResult(record=result.record, already_confirmed=False)

        if result.outcome == PromoteOutcome.ALREADY_CONFIRMED:
            logger.info(f"Subscription already confirmed: site={site_id}")
            return ConfirmResult(record=result.record, already_confirmed=True)

        if result.outcome == PromoteOutcome.STALE_GENERATION:
            logger.info(f"Token superseded during confirm: site={site_id}")
            raise StaleGeneration("Token generation superseded")

        logger.info(f"Subscription removed during confirm: site={site_id}")
        raise NotFound("Subscription not found")

    def _resolve_subscriber_id(self, subscriber_id: Optional[str], email: Optional[str]) -> str:
        if subscriber_id:
            if not isinstance(subscriber_id, str):
                raise ValidationError("subscriberId is invalid")
            subscriber_id = subscriber_id.strip().lower()
            if len(subscriber_id) != 64 or any(c not in '0123456789abcdef' for c in subscriber_id):
                raise ValidationError("subscriberId is invalid")
            return subscriber_id
        if email:
            return email_service.derive_subscriber_id(email_service.normalize_email(email))
        raise ValidationError("subscriberId or email is required")
