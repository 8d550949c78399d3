"""
Tests for the DynamoDB subscriber store.
"""

from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError, ReadTimeoutError

from domain.errors import ConfigurationError, GenerationConflict, StoreUnavailable
from domain.models import PromoteOutcome, SubscriberStatus
from services import dynamodb
from services.dynamodb import SubscriberStore

SUBSCRIBER_ID = 'ab' * 32
SITE_ID = 'juniper.camp'
NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)
NOW_TEXT = '2026-03-01T12:00:00.000000Z'


def item(status='Pending', generation=0, confirmed_at=None, last_requested_at=NOW_TEXT):
    result = {
        'subscriberId': {'S': SUBSCRIBER_ID},
        'siteId': {'S': SITE_ID},
        'email': {'S': 'a@x.com'},
        'status': {'S': status},
        'tokenHash': {'S': 'hash'},
        'tokenGeneration': {'N': str(generation)},
        'createdAt': {'S': NOW_TEXT},
        'lastRequestedAt': {'S': last_requested_at},
    }
    if confirmed_at:
        result['confirmedAt'] = {'S': confirmed_at}
    return result


def client_error(code, operation='UpdateItem', old_item=None):
    response = {'Error': {'Code': code, 'Message': code}}
    if old_item is not None:
        response['Item'] = old_item
    return ClientError(response, operation)


@pytest.fixture
def mock_client():
    return MagicMock()


@pytest.fixture
def table(mock_client):
    return SubscriberStore(table_name='SubscriberTable-test', client=mock_client)


class TestTimestamps:
    """Test timestamp formatting."""

    def test_round_trip(self):
        assert dynamodb.format_timestamp(NOW) == NOW_TEXT
        assert dynamodb.parse_timestamp(NOW_TEXT) == NOW

    def test_naive_datetimes_treated_as_utc(self):
        assert dynamodb.format_timestamp(datetime(2026, 3, 1, 12)) == NOW_TEXT

    def test_lexical_order_matches_time_order(self):
        earlier = dynamodb.format_timestamp(datetime(2026, 3, 1, 9, 0, 0, 5, tzinfo=timezone.utc))
        later = dynamodb.format_timestamp(datetime(2026, 3, 1, 10, tzinfo=timezone.utc))
        assert earlier < later


class TestConfiguration:
    """Test table name configuration."""

    def test_missing_table_name_raises(self, mock_client):
        with patch('services.dynamodb.TABLE_NAME', ''):
            store = SubscriberStore(client=mock_client)
            with pytest.raises(ConfigurationError, match="TABLE"):
                store.get(SUBSCRIBER_ID, SITE_ID)

    @patch('services.dynamodb.dynamodb_client')
    def test_defaults_to_module_client_and_env_table(self, mock_module_client):
        mock_module_client.get_item.return_value = {}

        SubscriberStore().get(SUBSCRIBER_ID, SITE_ID)

        assert mock_module_client.get_item.call_args[1]['TableName'] == 'SubscriberTable-test'


class TestGet:
    """Test reading records."""

    def test_get_existing(self, table, mock_client):
        mock_client.get_item.return_value = {'Item': item(generation=2)}

        record = table.get(SUBSCRIBER_ID, SITE_ID)

        assert record.subscriber_id == SUBSCRIBER_ID
        assert record.site_id == SITE_ID
        assert record.status == SubscriberStatus.PENDING
        assert record.token_generation == 2
        assert record.last_requested_at == NOW
        assert record.confirmed_at is None
        mock_client.get_item.assert_called_once_with(
            TableName='SubscriberTable-test',
            Key={'subscriberId': {'S': SUBSCRIBER_ID}, 'siteId': {'S': SITE_ID}},
            ConsistentRead=True
        )

    def test_get_missing(self, table, mock_client):
        mock_client.get_item.return_value = {}
        assert table.get(SUBSCRIBER_ID, SITE_ID) is None

    def test_get_confirmed_parses_confirmed_at(self, table, mock_client):
        mock_client.get_item.return_value = {'Item': item(status='Confirmed', confirmed_at=NOW_TEXT)}

        record = table.get(SUBSCRIBER_ID, SITE_ID)

        assert record.is_confirmed
        assert record.confirmed_at == NOW


class TestErrorMapping:
    """Test transient failures become StoreUnavailable."""

    @pytest.mark.parametrize('code', [
        'ProvisionedThroughputExceededException',
        'ThrottlingException',
        'InternalServerError',
        'RequestLimitExceeded',
    ])
    def test_transient_client_errors(self, table, mock_client, code):
        mock_client.get_item.side_effect = client_error(code, 'GetItem')

        with pytest.raises(StoreUnavailable):
            table.get(SUBSCRIBER_ID, SITE_ID)

    def test_connection_errors(self, table, mock_client):
        mock_client.get_item.side_effect = EndpointConnectionError(endpoint_url='https://dynamodb')

        with pytest.raises(StoreUnavailable):
            table.get(SUBSCRIBER_ID, SITE_ID)

    def test_read_timeout(self, table, mock_client):
        mock_client.get_item.side_effect = ReadTimeoutError(endpoint_url='https://dynamodb')

        with pytest.raises(StoreUnavailable):
            table.get(SUBSCRIBER_ID, SITE_ID)

    def test_other_client_errors_propagate(self, table, mock_client):
        mock_client.get_item.side_effect = client_error('ResourceNotFoundException', 'GetItem')

        with pytest.raises(ClientError):
            table.get(SUBSCRIBER_ID, SITE_ID)


class TestUpsertPending:
    """Test conditional creation and refresh of pending records."""

    def test_generation_zero_creates_if_absent(self, table, mock_client):
        record = table.upsert_pending(SUBSCRIBER_ID, SITE_ID, 'a@x.com', 'h0', 0, NOW)

        assert record.token_generation == 0
        assert record.created_at == NOW
        assert record.status == SubscriberStatus.PENDING

        kwargs = mock_client.put_item.call_args[1]
        assert kwargs['ConditionExpression'] == 'attribute_not_exists(subscriberId)'
        assert kwargs['Item']['tokenHash'] == {'S': 'h0'}
        assert kwargs['Item']['tokenGeneration'] == {'N': '0'}
        assert 'confirmedAt' not in kwargs['Item']

    def test_generation_zero_conflict_when_exists(self, table, mock_client):
        mock_client.put_item.side_effect = client_error('ConditionalCheckFailedException', 'PutItem')

        with pytest.raises(GenerationConflict):
            table.upsert_pending(SUBSCRIBER_ID, SITE_ID, 'a@x.com', 'h0', 0, NOW)

    def test_refresh_guards_previous_generation(self, table, mock_client):
        mock_client.update_item.return_value = {'Attributes': item(generation=3)}

        record = table.upsert_pending(SUBSCRIBER_ID, SITE_ID, 'a@x.com', 'h3', 3, NOW)

        assert record.token_generation == 3
        kwargs = mock_client.update_item.call_args[1]
        assert kwargs['ConditionExpression'] == '#status = :pending AND tokenGeneration = :prev'
        assert kwargs['ExpressionAttributeValues'][':prev'] == {'N': '2'}
        assert kwargs['ExpressionAttributeValues'][':gen'] == {'N': '3'}
        assert kwargs['ExpressionAttributeValues'][':pending'] == {'S': 'Pending'}
        assert 'createdAt' not in kwargs['UpdateExpression']

    def test_refresh_conflict(self, table, mock_client):
        mock_client.update_item.side_effect = client_error('ConditionalCheckFailedException')

        with pytest.raises(GenerationConflict):
            table.upsert_pending(SUBSCRIBER_ID, SITE_ID, 'a@x.com', 'h1', 1, NOW)


class TestPromoteConfirmed:
    """Test conditional promotion."""

    def test_promote_success(self, table, mock_client):
        mock_client.update_item.return_value = {
            'Attributes': item(status='Confirmed', generation=1, confirmed_at=NOW_TEXT)
        }

        result = table.promote_confirmed(SUBSCRIBER_ID, SITE_ID, 1, NOW)

        assert result.outcome == PromoteOutcome.CONFIRMED
        assert result.record.confirmed_at == NOW
        kwargs = mock_client.update_item.call_args[1]
        assert kwargs['ExpressionAttributeValues'][':gen'] == {'N': '1'}
        assert kwargs['ReturnValuesOnConditionCheckFailure'] == 'ALL_OLD'

    def test_promote_not_found(self, table, mock_client):
        mock_client.update_item.side_effect = client_error('ConditionalCheckFailedException')

        result = table.promote_confirmed(SUBSCRIBER_ID, SITE_ID, 0, NOW)

        assert result.outcome == PromoteOutcome.NOT_FOUND
        assert result.record is None

    def test_promote_already_confirmed(self, table, mock_client):
        mock_client.update_item.side_effect = client_error(
            'ConditionalCheckFailedException',
            old_item=item(status='Confirmed', confirmed_at=NOW_TEXT)
        )

        result = table.promote_confirmed(SUBSCRIBER_ID, SITE_ID, 0, NOW)

        assert result.outcome == PromoteOutcome.ALREADY_CONFIRMED
        assert result.record.confirmed_at == NOW

    def test_promote_stale_generation(self, table, mock_client):
        mock_client.update_item.side_effect = client_error(
            'ConditionalCheckFailedException',
            old_item=item(generation=2)
        )

        result = table.promote_confirmed(SUBSCRIBER_ID, SITE_ID, 1, NOW)

        assert result.outcome == PromoteOutcome.STALE_GENERATION
        assert result.record.token_generation == 2

    def test_promote_throttled(self, table, mock_client):
        mock_client.update_item.side_effect = client_error('ThrottlingException')

        with pytest.raises(StoreUnavailable):
            table.promote_confirmed(SUBSCRIBER_ID, SITE_ID, 0, NOW)


class TestDelete:
    """Test record deletion."""

    def test_unconditional_delete(self, table, mock_client):
        assert table.delete(SUBSCRIBER_ID, SITE_ID) is True

        kwargs = mock_client.delete_item.call_args[1]
        assert 'ConditionExpression' not in kwargs

    def test_conditional_delete(self, table, mock_client):
        assert table.delete(SUBSCRIBER_ID, SITE_ID, expired_before=NOW) is True

        kwargs = mock_client.delete_item.call_args[1]
        assert kwargs['ConditionExpression'] == '#status = :pending AND lastRequestedAt < :cutoff'
        assert kwargs['ExpressionAttributeValues'][':cutoff'] == {'S': NOW_TEXT}

    def test_conditional_delete_guard_failed(self, table, mock_client):
        mock_client.delete_item.side_effect = client_error('ConditionalCheckFailedException', 'DeleteItem')

        assert table.delete(SUBSCRIBER_ID, SITE_ID, expired_before=NOW) is False


class TestScan:
    """Test paginated scans."""

    def test_scan_follows_cursor(self, table, mock_client):
        key_a = {'subscriberId': {'S': 'a'}, 'siteId': {'S': 's1'}}
        key_b = {'subscriberId': {'S': 'b'}, 'siteId': {'S': 's2'}}
        mock_client.scan.side_effect = [
            {'Items': [key_a], 'LastEvaluatedKey': key_a},
            {'Items': [], 'LastEvaluatedKey': key_a},
            {'Items': [key_b]},
        ]

        pages = list(table.scan_pages(NOW, page_size=1))

        assert pages == [[('a', 's1')], [], [('b', 's2')]]
        calls = mock_client.scan.call_args_list
        assert 'ExclusiveStartKey' not in calls[0][1]
        assert calls[1][1]['ExclusiveStartKey'] == key_a
        assert calls[0][1]['Limit'] == 1
        assert calls[0][1]['ExpressionAttributeValues'][':cutoff'] == {'S': NOW_TEXT}

    def test_scan_is_lazy(self, table, mock_client):
        key_a = {'subscriberId': {'S': 'a'}, 'siteId': {'S': 's1'}}
        mock_client.scan.return_value = {'Items': [key_a], 'LastEvaluatedKey': key_a}

        keys = table.scan_pending_expired_before(NOW)
        assert next(keys) == ('a', 's1')
        assert mock_client.scan.call_count == 1

    def test_scan_failure_propagates(self, table, mock_client):
        mock_client.scan.side_effect = client_error('InternalServerError', 'Scan')

        with pytest.raises(StoreUnavailable):
            list(table.scan_pending_expired_before(NOW))


class TestCountBySite:
    """Test per-site subscriber counts."""

    def test_counts_across_pages(self, table, mock_client):
        def row(site, status):
            return {'siteId': {'S': site}, 'status': {'S': status}}

        mock_client.scan.side_effect = [
            {'Items': [row('s1', 'Confirmed'), row('s1', 'Pending')], 'LastEvaluatedKey': {'x': {'S': '1'}}},
            {'Items': [row('s2', 'Confirmed'), row('s1', 'Confirmed')]},
        ]

        counts = table.count_by_site()

        assert counts['s1'].confirmed == 2
        assert counts['s1'].pending == 1
        assert counts['s2'].confirmed == 1
        assert counts['s2'].pending == 0

    def test_count_single_site_filters(self, table, mock_client):
        mock_client.scan.return_value = {'Items': []}

        table.count_by_site('s1')

        kwargs = mock_client.scan.call_args[1]
        assert kwargs['FilterExpression'] == 'siteId = :site'
        assert kwargs['ExpressionAttributeValues'] == {':site': {'S': 's1'}}
