"""
Email address utilities for the subscriber handlers.

This module validates and normalizes subscriber email addresses, derives
the opaque subscriber ID stored as the table's partition key, and validates
site IDs.
"""

import hashlib
import logging
import os
import re
from typing import FrozenSet

from domain.errors import ValidationError

logger = logging.getLogger(__name__)

MAX_EMAIL_LENGTH = 254
MAX_LOCAL_PART_LENGTH = 64

_LOCAL_PART_RE = re.compile(r"[a-z0-9!#$%&'*+/=?^_`{|}~.-]+")
_DOMAIN_LABEL_RE = re.compile(r'[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?')
_SITE_ID_RE = re.compile(r'[a-z0-9]([a-z0-9.-]{0,251}[a-z0-9])?')


def _read_allowed_sites() -> FrozenSet[str]:
    raw = os.environ.get('ALLOWED_SITES', '')
    return frozenset(s.strip().lower() for s in raw.split(',') if s.strip())


# Empty set means any well-formed site ID is accepted
ALLOWED_SITES = _read_allowed_sites()


def normalize_email(raw: str) -> str:
    """
    Validate an email address and return its normalized form.

    Args:
        raw: Address as submitted by the visitor

    Returns:
        str: Trimmed, lower-cased address

    Raises:
        ValidationError: If the address is missing or malformed

    Example:
        >>> normalize_email("  Alice@Example.COM ")
        'alice@example.com'
    """
    if not raw or not isinstance(raw, str):
        raise ValidationError("email is required")

    email = raw.strip().lower()

    if len(email) > MAX_EMAIL_LENGTH:
        raise ValidationError("email is too long")
    if email.count('@') != 1:
        raise ValidationError("email must contain exactly one '@'")

    local_part, domain = email.split('@')

    if not local_part or len(local_part) > MAX_LOCAL_PART_LENGTH:
        raise ValidationError("email local part is invalid")
    if not _LOCAL_PART_RE.fullmatch(local_part) or local_part.startswith('.') \
            or local_part.endswith('.') or '..' in local_part:
        raise ValidationError("email local part is invalid")

    labels = domain.split('.')
    if len(labels) < 2 or not all(_DOMAIN_LABEL_RE.fullmatch(label) for label in labels):
        raise ValidationError("email domain is invalid")

    return email


def derive_subscriber_id(normalized_email: str) -> str:
    """
    Derive the stable, opaque subscriber ID for a normalized email address.

    Args:
        normalized_email: Output of normalize_email()

    Returns:
        str: 64-character hex SHA-256 digest
    """
    return hashlib.sha256(f"subscriber:{normalized_email}".encode('utf-8')).hexdigest()


def validate_site_id(raw: str) -> str:
    """
    Validate a site ID (the branded site's domain name).

    Raises:
        ValidationError: If the site ID is missing, malformed or not allowed
    """
    if not raw or not isinstance(raw, str):
        raise ValidationError("siteId is required")

    site_id = raw.strip().lower()

    if not _SITE_ID_RE.fullmatch(site_id):
        raise ValidationError("siteId is invalid")
    if ALLOWED_SITES and site_id not in ALLOWED_SITES:
        logger.warning(f"Rejected request for unknown site: {site_id}")
        raise ValidationError("siteId is not a known site")

    return site_id


def mask_email(email: str) -> str:
    """
    Mask an email address for logging.

    Example:
        >>> mask_email("alice@example.com")
        'a***@example.com'
    """
    if not email or '@' not in email:
        return '***'
    local_part, domain = email.split('@', 1)
    return f"{local_part[:1]}***@{domain}"
