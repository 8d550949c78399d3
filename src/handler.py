"""
AWS Lambda handlers for the subscriber HTTP API (API Gateway HTTP API).

Thin adapters that parse the API Gateway event, delegate to
SubscriptionService, and translate outcomes and errors to HTTP responses.

Routes:
    PUT  /subscribe  -> add_subscriber
    POST /confirm    -> confirm_subscriber
    OPTIONS on both  -> CORS preflight
"""

import base64
import json
import logging
import os
from typing import Any, Dict

from domain.errors import (
    InvalidToken,
    NotFound,
    RetryableError,
    ValidationError,
)
from domain.subscription_service import SubscriptionService
from services import dynamodb
from services import notifier

# Configure logging
logger = logging.getLogger()
logger.setLevel(os.environ.get('LOG_LEVEL', 'INFO'))

# Add console handler for local testing (AWS Lambda provides handlers automatically)
if not logger.handlers:
    console_handler = logging.StreamHandler()
    formatter = logging.Formatter('%(levelname)s - %(name)s - %(message)s')
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

# Environment variables
ENVIRONMENT = os.environ.get('ENVIRONMENT', 'dev')
CORS_ALLOW_ORIGIN = os.environ.get('CORS_ALLOW_ORIGIN', '*')
RETRY_AFTER_SECONDS = os.environ.get('RETRY_AFTER_SECONDS', '5')

# One generic message for wrong and superseded tokens
INVALID_LINK_MESSAGE = 'Confirmation link is invalid or has expired'
SUBSCRIBE_ACCEPTED_MESSAGE = 'Check your inbox to confirm your subscription'

# Initialize service once at module level (reused across invocations)
subscription_service = SubscriptionService()


def _cors_headers(methods: str) -> Dict[str, str]:
    return {
        'Access-Control-Allow-Origin': CORS_ALLOW_ORIGIN,
        'Access-Control-Allow-Methods': methods,
        'Access-Control-Allow-Headers': 'Content-Type',
    }


def _response(status_code: int, body: Dict[str, Any], methods: str, headers: Dict[str, str] = None) -> Dict[str, Any]:
    all_headers = {'Content-Type': 'application/json'}
    all_headers.update(_cors_headers(methods))
    if headers:
        all_headers.update(headers)
    return {
        'statusCode': status_code,
        'headers': all_headers,
        'body': json.dumps(body)
    }


def _http_method(event: Dict[str, Any]) -> str:
    """Request method for HTTP API (v2) and REST API (v1) payloads."""
    http = event.get('requestContext', {}).get('http', {})
    return (http.get('method') or event.get('httpMethod') or '').upper()


def _parse_body(event: Dict[str, Any]) -> Dict[str, Any]:
    """
    Decode the JSON request body.

    Raises:
        ValidationError: If the body is not a JSON object
    """
    raw = event.get('body')
    if not raw:
        return {}

    if event.get('isBase64Encoded'):
        try:
            raw = base64.b64decode(raw).decode('utf-8')
        except (ValueError, UnicodeDecodeError):
            raise ValidationError("Request body is not valid base64")

    try:
        body = json.loads(raw)
    except json.JSONDecodeError:
        raise ValidationError("Request body is not valid JSON")

    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    return body


def _error_response(error: Exception, methods: str) -> Dict[str, Any]:
    """Map a domain error to an HTTP response."""
    if isinstance(error, ValidationError):
        logger.info(f"Validation error: {error}")
        return _response(400, {'error': str(error)}, methods)

    if isinstance(error, NotFound):
        return _response(404, {'error': 'Subscription not found'}, methods)

    if isinstance(error, InvalidToken):
        # Covers StaleGeneration too; do not reveal which one it was
        return _response(400, {'error': INVALID_LINK_MESSAGE}, methods)

    if isinstance(error, RetryableError):
        logger.warning(f"Retryable failure: {error}")
        return _response(
            503,
            {'error': 'Service temporarily unavailable, please retry'},
            methods,
            headers={'Retry-After': RETRY_AFTER_SECONDS}
        )

    logger.error(f"Unhandled error: {error}", exc_info=True)
    return _response(500, {'error': 'Internal server error'}, methods)


def add_subscriber(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    Handle PUT /subscribe.

    Expected body:
    {
        "email": "visitor@example.com",
        "siteId": "juniper.camp"
    }

    The response is the same whether the subscription is new, refreshed or
    already confirmed.
    """
    methods = 'PUT,OPTIONS'
    method = _http_method(event)
    logger.info(f"Environment: {ENVIRONMENT}, {method} /subscribe")

    if method == 'OPTIONS':
        return _response(204, {}, methods)

    try:
        body = _parse_body(event)
        result = subscription_service.add_subscriber(
            email=body.get('email'),
            site_id=body.get('siteId')
        )
        logger.info(f"Subscribe request handled: {result!r}")
        return _response(202, {'message': SUBSCRIBE_ACCEPTED_MESSAGE}, methods)

    except Exception as e:
        return _error_response(e, methods)


def confirm_subscriber(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    Handle POST /confirm.

    Expected body (query-string parameters are accepted as a fallback):
    {
        "subscriberId": "<hex id from the link>",   # or "email"
        "siteId": "juniper.camp",
        "token": "<token from the link>"
    }
    """
    methods = 'POST,OPTIONS'
    method = _http_method(event)
    logger.info(f"Environment: {ENVIRONMENT}, {method} /confirm")

    if method == 'OPTIONS':
        return _response(204, {}, methods)

    try:
        params = dict(event.get('queryStringParameters') or {})
        params.update(_parse_body(event))

        result = subscription_service.confirm_subscriber(
            site_id=params.get('siteId'),
            token=params.get('token'),
            subscriber_id=params.get('subscriberId'),
            email=params.get('email')
        )
        return _response(200, {
            'status': result.record.status.value,
            'siteId': result.record.site_id,
        }, methods)

    except Exception as e:
        return _error_response(e, methods)


def health_check(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    Simple health check endpoint for monitoring.
    """
    return {
        'statusCode': 200,
        'body': json.dumps({
            'status': 'healthy',
            'environment': ENVIRONMENT,
            'tableConfigured': bool(dynamodb.TABLE_NAME),
            'notifierConfigured': notifier.is_configured()
        })
    }


def subscriber_stats(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    Per-site pending/confirmed subscriber counts (direct invocation only).

    Optional event: {"siteId": "juniper.camp"}
    """
    site_id = (event or {}).get('siteId')
    counts = subscription_service.store.count_by_site(site_id)
    logger.info(f"Subscriber counts for {len(counts)} site(s)")
    return {
        'sites': {site: site_counts.to_dict() for site, site_counts in sorted(counts.items())}
    }
