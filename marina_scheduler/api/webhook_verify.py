# marina_scheduler/api/webhook_verify.py
#
#   Verifies and parses intervention change events pushed by the database
#   webhook (change-data-capture feed) using HMAC-SHA256

import hmac
import hashlib
import base64
from typing import Optional

from marina_scheduler.models import ChangeKind, TaskChange
from marina_scheduler.timezone_utils import parse_date

SIGNATURE_HEADER = "X-Change-Signature"

# Tables whose changes concern the scheduling engine
WATCHED_TABLES = ("interventions",)

CHANGE_TYPES = {
    "INSERT": ChangeKind.INSERT,
    "UPDATE": ChangeKind.UPDATE,
    "DELETE": ChangeKind.DELETE,
}


def sign_payload(payload: bytes, secret: str) -> str:
    """Base64 HMAC-SHA256 of the raw body, as sent in X-Change-Signature."""
    digest = hmac.new(
        key=secret.encode('utf-8'),
        msg=payload,
        digestmod=hashlib.sha256
    ).digest()
    return base64.b64encode(digest).decode('utf-8')


def verify_change_signature(payload: bytes, signature_header: Optional[str],
                            secret: Optional[str]) -> bool:
    """
    Verify that a change event came from our database webhook.

    Args:
        payload: Raw request body bytes
        signature_header: Value of the X-Change-Signature header
        secret: Shared secret; None disables verification (local development)

    Returns:
        True if signature is valid, False otherwise
    """
    if not secret:
        return True

    if not signature_header:
        return False

    # Use constant-time comparison to prevent timing attacks
    return hmac.compare_digest(sign_payload(payload, secret), signature_header)


def _optional_date(record: dict, key: str):
    value = (record or {}).get(key)
    if value in (None, ""):
        return None
    return parse_date(value)


def parse_change_payload(data: dict) -> Optional[TaskChange]:
    """
    Parse a database webhook payload into a TaskChange.

    Payload format:
    {
        "type": "UPDATE",                  # INSERT | UPDATE | DELETE
        "table": "interventions",
        "record": {"id": "...", "site_id": "...", "scheduled_date": "2024-06-12", ...},
        "old_record": {"id": "...", "scheduled_date": "2024-06-10", ...}
    }

    Returns:
        TaskChange, or None for tables the engine does not watch

    Raises:
        ValueError: payload is not a usable change event
    """
    if not isinstance(data, dict):
        raise ValueError("Change payload must be an object")

    table = data.get("table", "interventions")
    if table not in WATCHED_TABLES:
        return None

    kind = CHANGE_TYPES.get(str(data.get("type", "")).upper())
    if kind is None:
        raise ValueError(f"Unknown change type: {data.get('type')!r}")

    record = data.get("record") or {}
    old_record = data.get("old_record") or {}
    if not isinstance(record, dict) or not isinstance(old_record, dict):
        raise ValueError("record and old_record must be objects")

    task_id = record.get("id") or old_record.get("id")
    if not task_id:
        raise ValueError("Change payload has no task id")

    return TaskChange(
        task_id=str(task_id),
        kind=kind,
        site_id=record.get("site_id") or old_record.get("site_id"),
        old_date=_optional_date(old_record, "scheduled_date"),
        new_date=_optional_date(record, "scheduled_date"),
    )
