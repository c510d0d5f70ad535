"""
Delivery, feedback and alignment transition rules.

These are pure functions over persisted record dicts; the repository calls
them inside its locked read-modify-write spans. Entries that are not objects
are not records and are dropped.
"""

from typing import Iterable, Optional

from visual_delivery.models import AlignmentState, DeliveryStatus


def records(items: list) -> list:
    return [item for item in items if isinstance(item, dict)]


def is_pending(item: dict) -> bool:
    return not item.get('handled')


def pending_items(items: list) -> list:
    return [item for item in records(items) if is_pending(item)]


def derive_status(feedback: list) -> DeliveryStatus:
    """pending_feedback iff at least one feedback item is unhandled."""
    if pending_items(feedback):
        return DeliveryStatus.PENDING_FEEDBACK
    return DeliveryStatus.NORMAL


def resolve_items(items: list, feedback_ids: Iterable[str], handled_by: str, now: str) -> tuple[list, int]:
    """
    Mark the given unhandled items as handled.

    Already-handled items and unknown ids are left alone.

    Returns:
        (updated items, number of items newly resolved)
    """
    wanted = set(feedback_ids)
    resolved = 0
    updated = []
    for item in records(items):
        if item.get('id') in wanted and is_pending(item):
            item = {**item, 'handled': True, 'handled_at': now, 'handled_by': handled_by}
            resolved += 1
        updated.append(item)
    return updated, resolved


def revoke_items(items: list, feedback_ids: Iterable[str]) -> tuple[list, int]:
    """
    Remove the given items, but only while they are still unhandled.

    Returns:
        (remaining items, number of items removed)
    """
    wanted = set(feedback_ids)
    current = records(items)
    kept = [item for item in current if not (item.get('id') in wanted and is_pending(item))]
    return kept, len(current) - len(kept)


def end_alignment(current: Optional[str], terminal: AlignmentState) -> AlignmentState:
    """
    State after ending an alignment.

    Only an active alignment moves to ``terminal``; one that already ended
    keeps its state, so ending twice is harmless.
    """
    if terminal not in (AlignmentState.RESOLVED, AlignmentState.CANCELED):
        raise ValueError(f"{terminal.value} is not a terminal alignment state")
    if current is None or AlignmentState(current) is AlignmentState.ACTIVE:
        return terminal
    return AlignmentState(current)
