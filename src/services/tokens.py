"""
Confirmation token codec.

A token has the form "<generation>.<secret>". The secret is 256 bits from
the `secrets` CSPRNG. The stored commitment is an HMAC-SHA256 over the
record key, the generation and the secret, so a stored hash cannot be used
to forge a confirmation, and a token cannot be replayed against another
record or another generation of the same record.
"""

import hashlib
import hmac
import logging
import os
import re
import secrets
from dataclasses import dataclass

from domain.errors import InvalidToken
from domain.models import SubscriberRecord

logger = logging.getLogger(__name__)

# Bytes of randomness in the token secret (>= 16 required)
TOKEN_BYTES = 32

# Optional server-side pepper; the commitment is still one-way without it
TOKEN_SECRET = os.environ.get('TOKEN_SECRET', '').encode('utf-8')

MAX_TOKEN_LENGTH = 128

_GENERATION_RE = re.compile(r'[0-9]{1,9}')


@dataclass(frozen=True)
class IssuedToken:
    """A freshly minted token and the commitment to store for it."""
    token: str
    token_hash: str
    generation: int


def _commit(subscriber_id: str, site_id: str, generation: int, secret: str) -> str:
    message = f"{subscriber_id}|{site_id}|{generation}|{secret}".encode('utf-8')
    return hmac.new(TOKEN_SECRET, message, hashlib.sha256).hexdigest()


def issue(subscriber_id: str, site_id: str, generation: int) -> IssuedToken:
    """
    Mint a confirmation token bound to a record key and generation.

    Args:
        subscriber_id: Record partition key
        site_id: Record sort key
        generation: Token generation the record will hold once written

    Returns:
        IssuedToken: token (sent to the subscriber) and token_hash (stored)
    """
    if generation < 0:
        raise ValueError(f"generation must be non-negative, got {generation}")

    secret = secrets.token_urlsafe(TOKEN_BYTES)
    token = f"{generation}.{secret}"
    return IssuedToken(
        token=token,
        token_hash=_commit(subscriber_id, site_id, generation, secret),
        generation=generation
    )


def parse(token: str):
    """
    Split a token into (generation, secret).

    Raises:
        InvalidToken: If the token is not well formed
    """
    if not token or not isinstance(token, str) or len(token) > MAX_TOKEN_LENGTH:
        raise InvalidToken("token is missing or malformed")

    generation_text, sep, secret = token.partition('.')
    if not sep or not secret or not _GENERATION_RE.fullmatch(generation_text):
        raise InvalidToken("token is missing or malformed")

    try:
        return int(generation_text), secret
    except ValueError:
        raise InvalidToken("token is missing or malformed")


def generation_of(token: str) -> int:
    """Return the token generation a token was issued for."""
    generation, _ = parse(token)
    return generation


def verify(token: str, record: SubscriberRecord) -> bool:
    """
    Check a presented token against a record's current commitment.

    The commitment is recomputed for the record's current generation, so a
    token from any superseded generation fails even if its own hash was once
    stored on the record.

    Returns:
        bool: True if the token is the record's current token
    """
    try:
        generation, secret = parse(token)
    except InvalidToken:
        return False

    expected = _commit(record.subscriber_id, record.site_id, record.token_generation, secret)
    matches = hmac.compare_digest(expected, record.token_hash or '')

    if not matches and generation < record.token_generation:
        logger.info(
            f"Token for superseded generation presented: site={record.site_id}, "
            f"token_generation={generation}, current={record.token_generation}"
        )

    return matches and generation == record.token_generation
