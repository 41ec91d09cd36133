"""Domain models - items, routine history records and the links between items."""
from datetime import datetime
from sqlalchemy import (
    Column,
    String,
    Integer,
    Date,
    DateTime,
    ForeignKey,
    Text,
    UniqueConstraint,
    Enum as SQLEnum,
)
from sqlalchemy.orm import relationship
from worktrack.database import Base
from worktrack.models.enums import ItemType, ItemStatus, LinkType


class Item(Base):
    """
    A unit of trackable work: a one-off task or a recurring routine template.

    Invariants enforced here:
    - Status is always one of the six allowed statuses
    - Recurrence columns are only meaningful when item_type is ROUTINE
    - Rows with deleted_at set are treated as absent everywhere
    """
    __tablename__ = "items"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    priority = Column(Integer, nullable=True)  # 1 (highest) .. 4
    item_type = Column(SQLEnum(ItemType), nullable=False, default=ItemType.TASK, index=True)
    status = Column(SQLEnum(ItemStatus), nullable=False, default=ItemStatus.PENDING)

    # Recurrence (routine templates only). Kept as plain strings so unknown
    # rules and malformed JSON survive a round-trip and are judged at read time.
    recurrence_rule = Column(String, nullable=True)
    recurrence_days = Column(Text, nullable=True)  # JSON list, or [month, day] for yearly
    recurrence_months = Column(Text, nullable=True)  # JSON list of 1-based months
    recurrence_time = Column(String, nullable=True)  # Advisory, ordering only

    completed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
    deleted_at = Column(DateTime, nullable=True)

    # Relationships
    completions = relationship("RoutineCompletion", back_populates="routine", cascade="all, delete-orphan")
    skips = relationship("RoutineSkip", back_populates="routine", cascade="all, delete-orphan")


class RoutineCompletion(Base):
    """
    Append-only record that a routine occurrence was done.

    Invariants:
    - completed_date is a calendar date, never a timestamp
    - At most one row per (routine_id, completed_date)
    """
    __tablename__ = "routine_completions"
    __table_args__ = (
        UniqueConstraint("routine_id", "completed_date", name="uq_routine_completion_date"),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    routine_id = Column(Integer, ForeignKey("items.id", ondelete="CASCADE"), nullable=False, index=True)
    completed_date = Column(Date, nullable=False, index=True)  # The date this was for, not when clicked
    notes = Column(Text, nullable=True)
    completed_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    routine = relationship("Item", back_populates="completions")


class RoutineSkip(Base):
    """
    Append-only record of an explicit decision not to do an occurrence.

    Invariants:
    - At most one row per (routine_id, skip_date)
    """
    __tablename__ = "routine_skips"
    __table_args__ = (
        UniqueConstraint("routine_id", "skip_date", name="uq_routine_skip_date"),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    routine_id = Column(Integer, ForeignKey("items.id", ondelete="CASCADE"), nullable=False, index=True)
    skip_date = Column(Date, nullable=False, index=True)
    notes = Column(Text, nullable=True)
    skipped_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    routine = relationship("Item", back_populates="skips")


class ItemLink(Base):
    """
    Directed edge between two items.

    For BLOCKS the meaning is "from_item blocks to_item".

    Invariants:
    - No duplicate (from_id, to_id, link_type)
    - Acyclicity is NOT enforced by the schema
    """
    __tablename__ = "item_links"
    __table_args__ = (
        UniqueConstraint("from_id", "to_id", "link_type", name="uq_item_link"),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    from_id = Column(Integer, ForeignKey("items.id", ondelete="CASCADE"), nullable=False, index=True)
    to_id = Column(Integer, ForeignKey("items.id", ondelete="CASCADE"), nullable=False, index=True)
    link_type = Column(SQLEnum(LinkType), nullable=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    from_item = relationship("Item", foreign_keys=[from_id])
    to_item = relationship("Item", foreign_keys=[to_id])
