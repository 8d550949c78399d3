"""
DynamoDB subscriber store.

One item per (subscriberId, siteId). Every state transition is a single
conditional write, so concurrent invocations for the same key are
linearized by DynamoDB rather than by any in-process locking.
"""

import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional, Tuple

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError, HTTPClientError
from botocore.exceptions import ConnectionError as BotoConnectionError

from domain.errors import ConfigurationError, GenerationConflict, StoreUnavailable
from domain.models import (
    PromoteOutcome,
    PromoteResult,
    SiteCounts,
    SubscriberRecord,
    SubscriberStatus,
)

logger = logging.getLogger(__name__)

# Configure DynamoDB client with timeouts and no SDK retries
# (retries belong to the calling infrastructure, not the core)
dynamodb_config = Config(
    retries={
        'max_attempts': 1,  # 1 attempt total (no retries)
        'mode': 'standard'
    },
    connect_timeout=5,  # 5 seconds to establish connection
    read_timeout=10     # 10 seconds max for reading response
)

# Initialize DynamoDB client at module level (thread-safe, reused across invocations)
dynamodb_client = boto3.client('dynamodb', config=dynamodb_config)
logger.info("DynamoDB client initialized with timeouts: connect=5s, read=10s, max_attempts=1")

# Name of the subscriber table (same variable the stack has always exported)
TABLE_NAME = os.environ.get('TABLE', '')

TIMESTAMP_FORMAT = '%Y-%m-%dT%H:%M:%S.%fZ'

TRANSIENT_ERROR_CODES = frozenset({
    'ProvisionedThroughputExceededException',
    'ThrottlingException',
    'RequestLimitExceeded',
    'InternalServerError',
    'ServiceUnavailable',
    'TransactionConflictException',
})

ScanKey = Tuple[str, str]


def format_timestamp(value: datetime) -> str:
    """Format a datetime as fixed-width UTC ISO-8601 (sorts lexically by time)."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def parse_timestamp(value: str) -> datetime:
    """Parse a timestamp written by format_timestamp()."""
    return datetime.strptime(value, TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)


def _error_code(error: ClientError) -> str:
    return error.response.get('Error', {}).get('Code', 'Unknown')


def record_from_item(item: Dict[str, Any]) -> SubscriberRecord:
    """
    Convert a low-level DynamoDB item to a SubscriberRecord.

    Args:
        item: Item in attribute-value format ({'S': ...}, {'N': ...})

    Returns:
        SubscriberRecord
    """
    confirmed_at = item.get('confirmedAt', {}).get('S')
    return SubscriberRecord(
        subscriber_id=item['subscriberId']['S'],
        site_id=item['siteId']['S'],
        email=item.get('email', {}).get('S', ''),
        status=SubscriberStatus(item['status']['S']),
        token_hash=item.get('tokenHash', {}).get('S', ''),
        token_generation=int(item['tokenGeneration']['N']),
        created_at=parse_timestamp(item['createdAt']['S']),
        last_requested_at=parse_timestamp(item['lastRequestedAt']['S']),
        confirmed_at=parse_timestamp(confirmed_at) if confirmed_at else None
    )


def record_to_item(record: SubscriberRecord) -> Dict[str, Any]:
    """Convert a SubscriberRecord to a low-level DynamoDB item."""
    item = {
        'subscriberId': {'S': record.subscriber_id},
        'siteId': {'S': record.site_id},
        'email': {'S': record.email},
        'status': {'S': record.status.value},
        'tokenHash': {'S': record.token_hash},
        'tokenGeneration': {'N': str(record.token_generation)},
        'createdAt': {'S': format_timestamp(record.created_at)},
        'lastRequestedAt': {'S': format_timestamp(record.last_requested_at)},
    }
    if record.confirmed_at is not None:
        item['confirmedAt'] = {'S': format_timestamp(record.confirmed_at)}
    return item


class SubscriberStore:
    """
    Subscriber table access with conditional, per-key atomic operations.

    Args:
        table_name: Table to use (defaults to the TABLE environment variable)
        client: boto3 DynamoDB client (defaults to the module-level client)
    """

    def __init__(self, table_name: Optional[str] = None, client=None):
        self._table_name = table_name
        self._client = client

    @property
    def table_name(self) -> str:
        table_name = self._table_name or TABLE_NAME
        if not table_name:
            raise ConfigurationError(
                "TABLE environment variable is required but not set. "
                "Please configure this in your Lambda environment."
            )
        return table_name

    @property
    def client(self):
        return self._client or dynamodb_client

    def _call(self, operation: str, **kwargs) -> Dict[str, Any]:
        """
        Invoke a DynamoDB operation, mapping transient failures to StoreUnavailable.

        Conditional check failures and other client errors propagate unchanged.
        """
        try:
            return getattr(self.client, operation)(TableName=self.table_name, **kwargs)
        except ClientError as e:
            error_code = _error_code(e)
            if error_code in TRANSIENT_ERROR_CODES:
                logger.error(f"DynamoDB {operation} unavailable: table={self.table_name}, error_code={error_code}")
                raise StoreUnavailable(f"Subscriber store unavailable ({error_code})") from e
            raise
        except (BotoConnectionError, HTTPClientError) as e:
            logger.error(f"DynamoDB {operation} connection failure: table={self.table_name}, error={e}")
            raise StoreUnavailable("Subscriber store unreachable") from e

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, subscriber_id: str, site_id: str) -> Optional[SubscriberRecord]:
        """Strongly consistent read of one record, or None if absent."""
        response = self._call(
            'get_item',
            Key=_key(subscriber_id, site_id),
            ConsistentRead=True
        )
        item = response.get('Item')
        return record_from_item(item) if item else None

    # ------------------------------------------------------------------
    # Conditional writes
    # ------------------------------------------------------------------

    def upsert_pending(
        self,
        subscriber_id: str,
        site_id: str,
        email: str,
        token_hash: str,
        generation: int,
        now: datetime
    ) -> SubscriberRecord:
        """
        Write a pending record at the given token generation.

        Generation 0 creates the record and requires that none exists.
        Generation N > 0 refreshes the token and lastRequestedAt and requires
        the record to still be Pending at generation N - 1.

        Raises:
            GenerationConflict: If another writer got there first, or the
                record was confirmed in the meantime
            StoreUnavailable: On transient store failures
        """
        try:
            if generation == 0:
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
                self._call(
                    'put_item',
                    Item=record_to_item(record),
                    ConditionExpression='attribute_not_exists(subscriberId)'
                )
                return record

            response = self._call(
                'update_item',
                Key=_key(subscriber_id, site_id),
                UpdateExpression=(
                    'SET tokenHash = :hash, tokenGeneration = :gen, '
                    'lastRequestedAt = :now, email = :email'
                ),
                ConditionExpression='#status = :pending AND tokenGeneration = :prev',
                ExpressionAttributeNames={'#status': 'status'},
                ExpressionAttributeValues={
                    ':hash': {'S': token_hash},
                    ':gen': {'N': str(generation)},
                    ':prev': {'N': str(generation - 1)},
                    ':now': {'S': format_timestamp(now)},
                    ':email': {'S': email},
                    ':pending': {'S': SubscriberStatus.PENDING.value},
                },
                ReturnValues='ALL_NEW'
            )
            return record_from_item(response['Attributes'])

        except ClientError as e:
            if _error_code(e) == 'ConditionalCheckFailedException':
                logger.info(f"Upsert lost race: site={site_id}, generation={generation}")
                raise GenerationConflict(
                    f"Record changed before generation {generation} could be written"
                ) from e
            raise

    def promote_confirmed(
        self,
        subscriber_id: str,
        site_id: str,
        expected_generation: int,
        now: datetime
    ) -> PromoteResult:
        """
        Promote a Pending record to Confirmed if it is still at expected_generation.

        Returns:
            PromoteResult: CONFIRMED on success, otherwise ALREADY_CONFIRMED,
            STALE_GENERATION or NOT_FOUND based on the item DynamoDB returned
            when the condition failed
        """
        try:
            response = self._call(
                'update_item',
                Key=_key(subscriber_id, site_id),
                UpdateExpression='SET #status = :confirmed, confirmedAt = :now',
                ConditionExpression=(
                    'attribute_exists(subscriberId) AND #status = :pending '
                    'AND tokenGeneration = :gen'
                ),
                ExpressionAttributeNames={'#status': 'status'},
                ExpressionAttributeValues={
                    ':confirmed': {'S': SubscriberStatus.CONFIRMED.value},
                    ':pending': {'S': SubscriberStatus.PENDING.value},
                    ':gen': {'N': str(expected_generation)},
                    ':now': {'S': format_timestamp(now)},
                },
                ReturnValues='ALL_NEW',
                ReturnValuesOnConditionCheckFailure='ALL_OLD'
            )
            return PromoteResult(PromoteOutcome.CONFIRMED, record_from_item(response['Attributes']))

        except ClientError as e:
            if _error_code(e) != 'ConditionalCheckFailedException':
                raise

            old_item = e.response.get('Item')
            if not old_item:
                return PromoteResult(PromoteOutcome.NOT_FOUND)

            current = record_from_item(old_item)
            if current.is_confirmed:
                return PromoteResult(PromoteOutcome.ALREADY_CONFIRMED, current)
            return PromoteResult(PromoteOutcome.STALE_GENERATION, current)

    def delete(
        self,
        subscriber_id: str,
        site_id: str,
        expired_before: Optional[datetime] = None
    ) -> bool:
        """
        Delete a record.

        Args:
            expired_before: If given, delete only while the record is still
                Pending with lastRequestedAt before this instant

        Returns:
            bool: False if the guard condition no longer held
        """
        kwargs: Dict[str, Any] = {'Key': _key(subscriber_id, site_id)}
        if expired_before is not None:
            kwargs.update(
                ConditionExpression='#status = :pending AND lastRequestedAt < :cutoff',
                ExpressionAttributeNames={'#status': 'status'},
                ExpressionAttributeValues={
                    ':pending': {'S': SubscriberStatus.PENDING.value},
                    ':cutoff': {'S': format_timestamp(expired_before)},
                }
            )

        try:
            self._call('delete_item', **kwargs)
            return True
        except ClientError as e:
            if _error_code(e) == 'ConditionalCheckFailedException':
                return False
            raise

    # ------------------------------------------------------------------
    # Scans
    # ------------------------------------------------------------------

    def scan_pages(self, cutoff: datetime, page_size: int = 100) -> Iterator[List[ScanKey]]:
        """
        Page through keys of Pending records last requested before cutoff.

        Each page is one Scan request; the cursor (LastEvaluatedKey) is
        carried between requests so memory use is bounded by page_size.
        Pages may be empty because the filter is applied after the read.
        """
        kwargs: Dict[str, Any] = {
            'FilterExpression': '#status = :pending AND lastRequestedAt < :cutoff',
            'ProjectionExpression': 'subscriberId, siteId',
            'ExpressionAttributeNames': {'#status': 'status'},
            'ExpressionAttributeValues': {
                ':pending': {'S': SubscriberStatus.PENDING.value},
                ':cutoff': {'S': format_timestamp(cutoff)},
            },
            'Limit': page_size,
        }

        while True:
            response = self._call('scan', **kwargs)
            yield [
                (item['subscriberId']['S'], item['siteId']['S'])
                for item in response.get('Items', [])
            ]

            last_key = response.get('LastEvaluatedKey')
            if not last_key:
                return
            kwargs['ExclusiveStartKey'] = last_key

    def scan_pending_expired_before(self, cutoff: datetime, page_size: int = 100) -> Iterator[ScanKey]:
        """Lazily yield (subscriber_id, site_id) for expired pending records."""
        for page in self.scan_pages(cutoff, page_size):
            yield from page

    def count_by_site(self, site_id: Optional[str] = None) -> Dict[str, SiteCounts]:
        """
        Count pending and confirmed subscribers per site.

        Args:
            site_id: Restrict the count to one site

        Returns:
            Dict mapping site ID to SiteCounts
        """
        kwargs: Dict[str, Any] = {
            'ProjectionExpression': 'siteId, #status',
            'ExpressionAttributeNames': {'#status': 'status'},
        }
        if site_id:
            kwargs['FilterExpression'] = 'siteId = :site'
            kwargs['ExpressionAttributeValues'] = {':site': {'S': site_id}}

        counts: Dict[str, SiteCounts] = {}
        while True:
            response = self._call('scan', **kwargs)
            for item in response.get('Items', []):
                site_counts = counts.setdefault(item['siteId']['S'], SiteCounts())
                if item['status']['S'] == SubscriberStatus.CONFIRMED.value:
                    site_counts.confirmed += 1
                else:
                    site_counts.pending += 1

            last_key = response.get('LastEvaluatedKey')
            if not last_key:
                return counts
            kwargs['ExclusiveStartKey'] = last_key


def _key(subscriber_id: str, site_id: str) -> Dict[str, Dict[str, str]]:
    return {'subscriberId': {'S': subscriber_id}, 'siteId': {'S': site_id}}
