"""Trendyol webhook authentication.

Trendyol authenticates webhook calls with the API key of the seller
integration, sent in one of several places depending on the client version.
"""

import hmac
from typing import Mapping, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from shared.core import get_logger
from stockledger.domain.models import Integration

logger = get_logger(__name__)

# Checked in this order; the first one present wins
KEY_HEADERS = ("X-Api-Key", "X-Trendyol-Api-Key")
KEY_QUERY_PARAM = "apiKey"


def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    lowered = name.lower()
    for key, value in headers.items():
        if key.lower() == lowered:
            return value
    return None


def bearer_token(headers: Mapping[str, str]) -> Optional[str]:
    authorization = _header(headers, "Authorization")
    if not authorization:
        return None
    scheme, _, token = authorization.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    return token.strip() or None


def extract_supplied_key(headers: Mapping[str, str], query_params: Mapping[str, str]) -> Optional[str]:
    for name in KEY_HEADERS:
        value = _header(headers, name)
        if value is not None:
            return value or None
    value = query_params.get(KEY_QUERY_PARAM)
    if value is not None:
        return value or None
    return bearer_token(headers)


def keys_match(supplied: Optional[str], configured: Optional[str]) -> bool:
    if not supplied or not configured:
        return False
    if not isinstance(supplied, str) or not isinstance(configured, str):
        return False
    return hmac.compare_digest(supplied.encode("utf-8"), configured.encode("utf-8"))


def is_valid_trendyol_request(
    db: Session,
    headers: Mapping[str, str],
    query_params: Mapping[str, str],
) -> Optional[Integration]:
    """Return the integration whose API key the request carries, or None."""
    supplied = extract_supplied_key(headers, query_params)
    if not supplied:
        logger.warning("Trendyol webhook rejected: no API key supplied")
        return None

    integrations = db.execute(
        select(Integration)
        .where(Integration.type == "sales_channel")
        .where(Integration.provider == "trendyol")
        .where(Integration.is_active.is_(True))
        .order_by(Integration.id)
    ).scalars().all()

    for integration in integrations:
        if keys_match(supplied, (integration.settings or {}).get("api_key")):
            logger.info(
                "Trendyol webhook validated",
                extra={"extra_fields": {"integration_id": integration.id}},
            )
            return integration

    logger.warning(
        "Trendyol webhook rejected: no matching integration",
        extra={"extra_fields": {"key_prefix": supplied[:8] + "..."}},
    )
    return None
