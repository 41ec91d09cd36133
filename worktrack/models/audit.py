"""
Activity log model - the per-item audit trail.

Written as a side effect of item, link and routine mutations. The recurrence
engine and the dependency graph only ever append to it.
"""
from datetime import datetime
from sqlalchemy import Column, String, Integer, DateTime, ForeignKey, Text
from worktrack.database import Base


class Activity(Base):
    """
    Immutable activity entry attached to an item.

    Invariants:
    - Once written, never edited or deleted
    - Append-only
    """
    __tablename__ = "activities"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    item_id = Column(Integer, ForeignKey("items.id", ondelete="CASCADE"), nullable=False, index=True)
    action = Column(String, nullable=False, index=True)  # e.g., "unblocked"
    detail = Column(Text, nullable=True)
    old_value = Column(String, nullable=True)
    new_value = Column(String, nullable=True)
    created_by = Column(String, nullable=False, default="user")  # "user" or "system"
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)


# Action constants for consistency
class ActivityAction:
    """Enumeration of activity actions."""
    # Item lifecycle
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"
    STATUS_CHANGED = "status_changed"

    # Blocking graph
    BLOCKED = "blocked"
    UNBLOCKED = "unblocked"
    LINKED = "linked"
    UNLINKED = "unlinked"

    # Routine history
    ROUTINE_COMPLETED = "routine_completed"
    ROUTINE_UNCOMPLETED = "routine_uncompleted"
    ROUTINE_SKIPPED = "routine_skipped"
    ROUTINE_UNSKIPPED = "routine_unskipped"
    ROUTINE_CAUGHT_UP = "routine_caught_up"


def record_activity(
    db,
    item_id: int,
    action: str,
    detail: str = None,
    old_value: str = None,
    new_value: str = None,
    created_by: str = "user",
) -> Activity:
    """Stage an activity row on the session. The caller owns the commit."""
    activity = Activity(
        item_id=item_id,
        action=action,
        detail=detail,
        old_value=old_value,
        new_value=new_value,
        created_by=created_by,
    )
    db.add(activity)
    return activity
