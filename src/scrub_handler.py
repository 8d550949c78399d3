"""
AWS Lambda handler for the scheduled subscriber scrub (EventBridge rate rule).

Thin orchestration layer that delegates to Scrubber.
Policy: per-record failures are logged and skipped; a failure to list the
table fails the invocation, and the next scheduled run picks up the rest.
"""

import logging
import os
from typing import Dict, Any

from domain.scrubber import Scrubber

# Configure logging
logger = logging.getLogger()
logger.setLevel(os.environ.get('LOG_LEVEL', 'INFO'))

# Add console handler for local testing (AWS Lambda provides handlers automatically)
if not logger.handlers:
    console_handler = logging.StreamHandler()
    formatter = logging.Formatter('%(levelname)s - %(message)s')
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

# Initialize scrubber once at module level (reused across invocations)
scrubber = Scrubber()


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    Delete pending subscriptions that were never confirmed.

    Args:
        event: EventBridge scheduled event; {"dryRun": true} reports without deleting
        context: Lambda context

    Returns:
        Dict with the scrub summary counters
    """
    dry_run = bool((event or {}).get('dryRun', False))

    logger.info("=" * 70)
    logger.info(f"Subscriber Scrub - Started{' (dry run)' if dry_run else ''}")
    logger.info("=" * 70)

    summary = scrubber.run(dry_run=dry_run)

    # Log summary
    logger.info("=" * 70)
    logger.info(f"Scrub complete: {summary.pages} page(s), {summary.scanned} candidate(s)")
    logger.info(f"  Deleted: {summary.deleted}")
    logger.info(f"  Skipped (confirmed): {summary.skipped_confirmed}")
    logger.info(f"  Skipped (refreshed): {summary.skipped_refreshed}")
    logger.info(f"  Skipped (missing): {summary.skipped_missing}")
    logger.info(f"  Errors: {summary.failed}")
    logger.info("=" * 70)

    if summary.failed:
        logger.warning(f"⚠ {summary.failed} record(s) could not be scrubbed; they stay eligible for the next run")
        for subscriber_id, site_id in summary.failed_keys:
            logger.warning(f"  Not scrubbed: subscriber={subscriber_id[:12]}... site={site_id}")

    return summary.to_dict()
