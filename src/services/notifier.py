"""
Confirmation request notifier.

Hands confirmation requests to the external notification dispatcher by
enqueueing them on SQS. Delivery (templating, sending, retries) is the
dispatcher's concern; this module only decides what is sent and to whom.
"""

import json
import logging
import os
from urllib.parse import urlencode

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from domain.errors import NotifierUnavailable
from domain.models import SubscriberRecord
from services.email import mask_email

logger = logging.getLogger(__name__)

# Configure SQS client with timeouts
sqs_config = Config(
    retries={
        'max_attempts': 1,
        'mode': 'standard'
    },
    connect_timeout=5,
    read_timeout=10
)

# Module-level client (reused across invocations)
sqs_client = boto3.client('sqs', config=sqs_config)

# Configuration from environment
NOTIFICATION_QUEUE_URL = os.environ.get('NOTIFICATION_QUEUE_URL', '')
CONFIRM_URL_TEMPLATE = os.environ.get('CONFIRM_URL_TEMPLATE', 'https://{site_id}/confirm')

MESSAGE_TYPE = 'confirm-subscription'


def is_configured() -> bool:
    """
    Check if the notification queue is configured.

    Returns:
        True if NOTIFICATION_QUEUE_URL is set
    """
    return bool(NOTIFICATION_QUEUE_URL)


def build_confirmation_link(subscriber_id: str, site_id: str, token: str) -> str:
    """
    Build the confirmation link sent to the subscriber.

    Example:
        >>> build_confirmation_link("ab12", "juniper.camp", "0.xyz")
        'https://juniper.camp/confirm?subscriberId=ab12&siteId=juniper.camp&token=0.xyz'
    """
    base_url = CONFIRM_URL_TEMPLATE.format(site_id=site_id)
    query = urlencode({
        'subscriberId': subscriber_id,
        'siteId': site_id,
        'token': token,
    })
    separator = '&' if '?' in base_url else '?'
    return f"{base_url}{separator}{query}"


def send_confirmation_request(record: SubscriberRecord, token: str) -> bool:
    """
    Enqueue one confirmation request for the dispatcher.

    Args:
        record: Pending record the token was issued for
        token: Plain confirmation token (never stored or logged)

    Returns:
        bool: True if enqueued, False if the notifier is not configured

    Raises:
        NotifierUnavailable: If the queue rejected the message
    """
    if not is_configured():
        logger.warning(
            f"Notification queue not configured, skipping confirmation request "
            f"for {mask_email(record.email)} (site={record.site_id})"
        )
        return False

    message = {
        'type': MESSAGE_TYPE,
        'destination': record.email,
        'confirmationLink': build_confirmation_link(record.subscriber_id, record.site_id, token),
        'subscriberId': record.subscriber_id,
        'siteId': record.site_id,
        'tokenGeneration': record.token_generation,
    }

    try:
        response = sqs_client.send_message(
            QueueUrl=NOTIFICATION_QUEUE_URL,
            MessageBody=json.dumps(message),
            MessageAttributes={
                'siteId': {'DataType': 'String', 'StringValue': record.site_id},
            }
        )
        logger.info(
            f"Queued confirmation request: to={mask_email(record.email)}, "
            f"site={record.site_id}, generation={record.token_generation}, "
            f"message_id={response.get('MessageId')}"
        )
        return True

    except (ClientError, BotoCoreError) as e:
        logger.error(f"Failed to queue confirmation request for site={record.site_id}: {e}")
        raise NotifierUnavailable("Could not queue confirmation email") from e
