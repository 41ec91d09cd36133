"""Enums for worktrack - these define the valid values for item states and link kinds."""
from enum import Enum


class ItemType(str, Enum):
    """A task is a one-off unit of work; a routine is a recurring template."""
    TASK = "task"
    ROUTINE = "routine"


class ItemStatus(str, Enum):
    """The six statuses an Item can be in."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"
    CANCELLED = "cancelled"
    BLOCKED = "blocked"
    DEFERRED = "deferred"


class RecurrenceRule(str, Enum):
    """Recurrence rules understood by the recurrence engine."""
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    BIMONTHLY = "bimonthly"
    YEARLY = "yearly"
    CUSTOM = "custom"


class LinkType(str, Enum):
    """Directed link kinds. Only BLOCKS carries behaviour."""
    BLOCKS = "blocks"
    RELATED = "related"
    DUPLICATE = "duplicate"
