"""
Scrub pass - reclaims subscriptions that were never confirmed.

Pipeline per run:
1. Compute cutoff = now - expiry window
2. Page through Pending records last requested before the cutoff
3. Re-read each record and delete it only if it is still Pending and expired
   (the delete itself is conditional on the same predicate)

Per-key failures are logged and counted; a failure to list a page propagates.
"""

import logging
import os
from datetime import datetime, timedelta
from typing import Optional

from .models import ScrubSummary
from .subscription_service import utc_now
from services.dynamodb import SubscriberStore

logger = logging.getLogger(__name__)

# Pending records untouched for this long are eligible for deletion
DEFAULT_EXPIRY_DAYS = 7
EXPIRY_WINDOW = timedelta(days=float(os.environ.get('SCRUB_EXPIRY_DAYS', DEFAULT_EXPIRY_DAYS)))

SCRUB_PAGE_SIZE = int(os.environ.get('SCRUB_PAGE_SIZE', '100'))


class Scrubber:
    """
    Deletes expired Pending subscriber records.

    Args:
        store: Subscriber store (defaults to the DynamoDB-backed store)
        expiry_window: Age of lastRequestedAt after which a Pending record expires
        page_size: Scan page size
    """

    def __init__(
        self,
        store=None,
        expiry_window: timedelta = EXPIRY_WINDOW,
        page_size: int = SCRUB_PAGE_SIZE
    ):
        self.store = store if store is not None else SubscriberStore()
        self.expiry_window = expiry_window
        self.page_size = page_size

    def run(self, now: Optional[datetime] = None, dry_run: bool = False) -> ScrubSummary:
        """
        Run one scrub pass.

        Args:
            now: Reference time (defaults to current UTC time)
            dry_run: Count what would be deleted without deleting

        Returns:
            ScrubSummary with per-outcome counters

        Raises:
            StoreUnavailable: If a scan page could not be read
        """
        now = now or utc_now()
        summary = ScrubSummary(cutoff=now - self.expiry_window, dry_run=dry_run)

        logger.info(f"Scrubbing pending subscriptions last requested before {summary.cutoff.isoformat()}")

        for page in self.store.scan_pages(summary.cutoff, self.page_size):
            summary.pages += 1
            logger.info(f"Page {summary.pages}: {len(page)} candidate(s)")

            for subscriber_id, site_id in page:
                summary.scanned += 1
                self._scrub_key(subscriber_id, site_id, summary)

        return summary

    def _scrub_key(self, subscriber_id: str, site_id: str, summary: ScrubSummary) -> None:
        """Recheck one scanned key against current state and delete if still expired."""
        try:
            record = self.store.get(subscriber_id, site_id)

            if record is None:
                summary.skipped_missing += 1
                return
            if record.is_confirmed:
                logger.info(f"Skipping confirmed subscription: site={site_id}")
                summary.skipped_confirmed += 1
                return
            if not record.is_expired(summary.cutoff):
                logger.info(f"Skipping refreshed subscription: site={site_id}")
                summary.skipped_refreshed += 1
                return

            if summary.dry_run:
                summary.deleted += 1
                return

            if self.store.delete(subscriber_id, site_id, expired_before=summary.cutoff):
                summary.deleted += 1
            else:
                # Confirmed or refreshed between recheck and delete
                summary.skipped_refreshed += 1

        except Exception as e:
            logger.error(f"Failed to scrub subscriber {subscriber_id[:12]}... site={site_id}: {e}", exc_info=True)
            summary.failed += 1
            summary.failed_keys.append((subscriber_id, site_id))
