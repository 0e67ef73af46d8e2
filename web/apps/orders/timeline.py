"""Append-only timeline of order lifecycle events.

Events are only ever inserted. Each write runs in its own savepoint so a
failed insert is logged and rolled back alone, never taking the order
change it describes down with it.
"""

import logging
from typing import Iterable, List, Optional

from django.db import DatabaseError, transaction

from .domain import OrderStatus, TimelineEvent, TimelineEventType
from .models import TimelineEventModel

logger = logging.getLogger("orders.timeline")


def _to_event(row: TimelineEventModel) -> TimelineEvent:
    return TimelineEvent(
        order_id=str(row.order_id),
        type=TimelineEventType(row.type),
        message=row.message,
        actor=row.actor,
        data=row.data,
        created_at=row.created_at,
    )


def status_change_data(from_status: Optional[OrderStatus], to_status: OrderStatus, **extra) -> dict:
    data = {
        "from_status": OrderStatus(from_status).value if from_status else None,
        "to_status": OrderStatus(to_status).value,
    }
    data.update({k: v for k, v in extra.items() if v is not None})
    return data


def replay_status_history(events: Iterable[TimelineEvent]) -> List[OrderStatus]:
    """Rebuild the sequence of statuses an order went through.

    Args:
        events: Timeline events in chronological order.

    Returns:
        list[OrderStatus]: Every status the order entered, oldest first.
    """
    history: List[OrderStatus] = []
    for event in events:
        to_status = (event.data or {}).get("to_status")
        if to_status and (not history or history[-1] != OrderStatus(to_status)):
            history.append(OrderStatus(to_status))
    return history


class TimelineLedger:
    """Writes and reads ``TimelineEventModel`` rows."""

    def append(
        self,
        order_id,
        type: TimelineEventType,
        message: str,
        actor: str = "SYSTEM",
        data: Optional[dict] = None,
    ) -> Optional[TimelineEvent]:
        """Append one event to an order's timeline.

        Returns:
            The stored event, or None when the write failed (already logged).
        """
        try:
            with transaction.atomic():
                row = TimelineEventModel.objects.create(
                    order_id=order_id,
                    type=TimelineEventType(type).value,
                    message=message[:500],
                    actor=actor or "SYSTEM",
                    data=data,
                )
        except DatabaseError:
            logger.exception(
                "timeline append failed",
                extra={"order_id": str(order_id), "event_type": TimelineEventType(type).value},
            )
            return None
        return _to_event(row)

    def list_for(self, order_id, newest_first: bool = True) -> List[TimelineEvent]:
        """Return an order's events, newest first for display or oldest first."""
        ordering = ("-created_at", "-id") if newest_first else ("created_at", "id")
        rows = TimelineEventModel.objects.filter(order_id=order_id).order_by(*ordering)
        return [_to_event(r) for r in rows]
