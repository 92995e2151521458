"""
Notification outbox repository.

Rows written here are picked up by the email worker; this service never sends
email itself.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Mapping
from uuid import UUID, uuid4

from repositories.client import get_supabase
from repositories.rows import response_rows, to_iso_utc

_OUTBOX_TABLE: str = "notification_outbox"


def insert_notification(
    kind: str,
    recipient_user_id: UUID,
    order_id: UUID,
    payload: Mapping[str, Any],
    created_at: datetime,
) -> UUID:
    """
    Append a notification to the outbox.

    Returns:
        The new notification id
    """

    notification_id = uuid4()
    row: Dict[str, Any] = {
        "notification_id": str(notification_id),
        "kind": kind,
        "recipient_user_id": str(recipient_user_id),
        "order_id": str(order_id),
        "payload": dict(payload),
        "created_at_utc": to_iso_utc(created_at, name="created_at"),
        "dispatched_at_utc": None,
    }

    response = get_supabase().table(_OUTBOX_TABLE).insert(row).execute()
    response_rows(response, "insert notification")
    return notification_id


__all__ = ["insert_notification"]
