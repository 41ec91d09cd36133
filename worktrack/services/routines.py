"""
Routine engine: due/overdue views and completion/skip bookkeeping.

"Due" and "overdue" are never stored. They are recomputed on every call from
the routine's recurrence rule plus its completion and skip history, so every
operation here takes the date it is evaluated for.
"""
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Dict, List, Optional, Set, Tuple

from sqlalchemy import func, insert
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from worktrack.logger import get_logger
from worktrack.models.audit import ActivityAction, record_activity
from worktrack.models.domain import Item, RoutineCompletion, RoutineSkip
from worktrack.models.enums import ItemStatus, ItemType
from worktrack.services.errors import NotFoundError
from worktrack.services.recurrence import (
    RecurrenceSpec,
    day_window,
    encode_recurrence_list,
    get_next_due_date,
    is_due_on_date,
    iter_days,
    to_calendar_date,
)

logger = get_logger(__name__)

# Days before the as-of date that get_overdue_routines looks back over
OVERDUE_WINDOW_DAYS = 30

ROUTINE_NOT_FOUND = "Routine not found"
CATCH_UP_COMPLETE_NOTE = "Completed retroactively"
CATCH_UP_SKIP_NOTE = "Skipped to advance to next due date"

_RECURRENCE_LIST_FIELDS = ("recurrence_days", "recurrence_months")
_UPDATABLE_FIELDS = (
    "title",
    "description",
    "priority",
    "recurrence_rule",
    "recurrence_time",
) + _RECURRENCE_LIST_FIELDS


@dataclass
class RoutineWithStatus:
    routine: Item
    last_completed: Optional[str]
    completion_count: int
    is_due_today: Optional[bool] = None
    completed_today: Optional[bool] = None


@dataclass
class OverdueRoutine:
    routine: Item
    overdue_dates: List[str]
    days_overdue: int


@dataclass
class CompletionResult:
    success: bool
    completion_id: Optional[int] = None
    already_completed: bool = False
    superseded_skip: bool = False
    error: Optional[str] = None


@dataclass
class SkipResult:
    success: bool
    skip_id: Optional[int] = None
    already_skipped: bool = False
    already_completed: bool = False
    error: Optional[str] = None


@dataclass
class RemovalResult:
    success: bool
    deleted: bool


@dataclass
class CompleteCatchUpResult:
    success: bool
    completed_count: int = 0
    next_due: str = ""
    completed_dates: List[str] = field(default_factory=list)
    error: Optional[str] = None


@dataclass
class SkipCatchUpResult:
    success: bool
    skipped_count: int = 0
    next_due: str = ""
    skipped_dates: List[str] = field(default_factory=list)
    error: Optional[str] = None


class RoutineEngine:
    """Reads and writes routine history for one database session."""

    def __init__(self, db: Session, fallback_to_from_date: bool = True):
        self.db = db
        self.fallback_to_from_date = fallback_to_from_date

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def _routines_query(self):
        return self.db.query(Item).filter(
            Item.item_type == ItemType.ROUTINE,
            Item.deleted_at.is_(None)
        )

    def get_routine(self, routine_id: int) -> Optional[Item]:
        """A non-deleted routine template, or None."""
        return self._routines_query().filter(Item.id == routine_id).first()

    def _completion_stats(self) -> Dict[int, Tuple[Optional[date], int]]:
        """routine_id -> (most recent completed_date, number of completions)"""
        rows = self.db.query(
            RoutineCompletion.routine_id,
            func.max(RoutineCompletion.completed_date),
            func.count(RoutineCompletion.id)
        ).group_by(
            RoutineCompletion.routine_id
        ).all()
        return {routine_id: (last, count) for routine_id, last, count in rows}

    def _with_status(
        self,
        routine: Item,
        stats: Dict[int, Tuple[Optional[date], int]],
        is_due_today: Optional[bool] = None,
        completed_today: Optional[bool] = None
    ) -> RoutineWithStatus:
        last, count = stats.get(routine.id, (None, 0))
        return RoutineWithStatus(
            routine=routine,
            last_completed=to_calendar_date(last).isoformat() if last else None,
            completion_count=count,
            is_due_today=is_due_today,
            completed_today=completed_today
        )

    def get_routines(self) -> List[RoutineWithStatus]:
        """All routine templates ordered by title."""
        stats = self._completion_stats()
        routines = self._routines_query().order_by(Item.title.asc()).all()
        return [self._with_status(routine, stats) for routine in routines]

    def get_routines_due(self, on) -> List[RoutineWithStatus]:
        """
        Routines with an occurrence on the given date.

        Ordered by recurrence_time (routines without one last), then title.
        """
        day = to_calendar_date(on)
        start, end = day_window(day)

        routines = self._routines_query().filter(
            Item.recurrence_rule.isnot(None)
        ).order_by(
            Item.recurrence_time.is_(None),
            Item.recurrence_time.asc(),
            Item.title.asc()
        ).all()

        completed_ids = {
            routine_id
            for (routine_id,) in self.db.query(RoutineCompletion.routine_id).filter(
                RoutineCompletion.completed_date >= start,
                RoutineCompletion.completed_date < end
            ).all()
        }
        stats = self._completion_stats()

        due = []
        for routine in routines:
            if is_due_on_date(RecurrenceSpec.from_item(routine), day):
                due.append(self._with_status(
                    routine,
                    stats,
                    is_due_today=True,
                    completed_today=routine.id in completed_ids
                ))
        return due

    def get_overdue_routines(self, as_of) -> List[OverdueRoutine]:
        """
        Occurrences in the OVERDUE_WINDOW_DAYS before as_of that were neither
        completed nor skipped.

        as_of itself is "due", never "overdue". Days before the routine was
        created are never counted.
        """
        today = to_calendar_date(as_of)
        window_start = today - timedelta(days=OVERDUE_WINDOW_DAYS)

        routines = self._routines_query().filter(
            Item.recurrence_rule.isnot(None)
        ).order_by(Item.title.asc()).all()

        completed = {
            (routine_id, to_calendar_date(day))
            for routine_id, day in self.db.query(
                RoutineCompletion.routine_id, RoutineCompletion.completed_date
            ).filter(RoutineCompletion.completed_date >= window_start).all()
        }
        skipped = {
            (routine_id, to_calendar_date(day))
            for routine_id, day in self.db.query(
                RoutineSkip.routine_id, RoutineSkip.skip_date
            ).filter(RoutineSkip.skip_date >= window_start).all()
        }

        result = []
        for routine in routines:
            spec = RecurrenceSpec.from_item(routine)
            created = to_calendar_date(routine.created_at)
            overdue_dates = []

            for offset in range(1, OVERDUE_WINDOW_DAYS + 1):
                check = today - timedelta(days=offset)
                if check < created:
                    continue
                if not is_due_on_date(spec, check):
                    continue
                key = (routine.id, check)
                if key not in completed and key not in skipped:
                    overdue_dates.append(check.isoformat())

            if overdue_dates:
                result.append(OverdueRoutine(
                    routine=routine,
                    overdue_dates=overdue_dates,
                    days_overdue=len(overdue_dates)
                ))
        return result

    def get_routine_history(self, routine_id: int, limit: int = 30) -> List[RoutineCompletion]:
        """Most recent completions first."""
        return self.db.query(RoutineCompletion).filter(
            RoutineCompletion.routine_id == routine_id
        ).order_by(
            RoutineCompletion.completed_date.desc()
        ).limit(limit).all()

    # ------------------------------------------------------------------
    # Single-date completion / skip
    # ------------------------------------------------------------------

    def _in_window(self, model, date_column, routine_id: int, on):
        start, end = day_window(on)
        return self.db.query(model).filter(
            model.routine_id == routine_id,
            date_column >= start,
            date_column < end
        )

    def complete_routine(self, routine_id: int, on, notes: Optional[str] = None) -> CompletionResult:
        """
        Record a completion for one calendar date.

        Idempotent: an existing completion for that date is returned as-is.
        A skip recorded for the same date is replaced by the completion.
        """
        routine = self.get_routine(routine_id)
        if routine is None:
            return CompletionResult(success=False, error=ROUTINE_NOT_FOUND)

        day = to_calendar_date(on)
        existing = self._in_window(
            RoutineCompletion, RoutineCompletion.completed_date, routine_id, day
        ).first()
        if existing:
            return CompletionResult(success=True, completion_id=existing.id, already_completed=True)

        superseded = self._in_window(
            RoutineSkip, RoutineSkip.skip_date, routine_id, day
        ).delete(synchronize_session=False)

        completion = RoutineCompletion(
            routine_id=routine_id,
            completed_date=day,
            notes=notes or None
        )
        self.db.add(completion)
        record_activity(
            self.db,
            routine_id,
            ActivityAction.ROUTINE_COMPLETED,
            detail=notes or None,
            new_value=day.isoformat()
        )
        self.db.commit()
        self.db.refresh(completion)

        return CompletionResult(
            success=True,
            completion_id=completion.id,
            superseded_skip=superseded > 0
        )

    def skip_routine(self, routine_id: int, on, notes: Optional[str] = None) -> SkipResult:
        """
        Record an explicit skip for one calendar date.

        Idempotent like complete_routine. A date that is already completed is
        left alone and reported with already_completed.
        """
        routine = self.get_routine(routine_id)
        if routine is None:
            return SkipResult(success=False, error=ROUTINE_NOT_FOUND)

        day = to_calendar_date(on)
        existing = self._in_window(RoutineSkip, RoutineSkip.skip_date, routine_id, day).first()
        if existing:
            return SkipResult(success=True, skip_id=existing.id, already_skipped=True)

        completed = self._in_window(
            RoutineCompletion, RoutineCompletion.completed_date, routine_id, day
        ).first()
        if completed:
            return SkipResult(success=True, already_completed=True)

        skip = RoutineSkip(routine_id=routine_id, skip_date=day, notes=notes or None)
        self.db.add(skip)
        record_activity(
            self.db,
            routine_id,
            ActivityAction.ROUTINE_SKIPPED,
            detail=notes or None,
            new_value=day.isoformat()
        )
        self.db.commit()
        self.db.refresh(skip)

        return SkipResult(success=True, skip_id=skip.id)

    def _remove(self, model, date_column, action: str, routine_id: int, on) -> RemovalResult:
        day = to_calendar_date(on)
        count = self._in_window(model, date_column, routine_id, day).delete(synchronize_session=False)
        if count > 0:
            record_activity(self.db, routine_id, action, old_value=day.isoformat())
        self.db.commit()
        return RemovalResult(success=True, deleted=count > 0)

    def uncomplete_routine(self, routine_id: int, on) -> RemovalResult:
        """Remove the completion for a date. Removing nothing is not an error."""
        return self._remove(
            RoutineCompletion,
            RoutineCompletion.completed_date,
            ActivityAction.ROUTINE_UNCOMPLETED,
            routine_id,
            on
        )

    def unskip_routine(self, routine_id: int, on) -> RemovalResult:
        """Remove the skip for a date. Removing nothing is not an error."""
        return self._remove(
            RoutineSkip,
            RoutineSkip.skip_date,
            ActivityAction.ROUTINE_UNSKIPPED,
            routine_id,
            on
        )

    # ------------------------------------------------------------------
    # Bulk catch-up
    # ------------------------------------------------------------------

    def _recorded_dates(self, routine_id: int) -> Set[date]:
        """Every date that already has a completion or a skip."""
        completed = self.db.query(RoutineCompletion.completed_date).filter(
            RoutineCompletion.routine_id == routine_id
        ).all()
        skipped = self.db.query(RoutineSkip.skip_date).filter(
            RoutineSkip.routine_id == routine_id
        ).all()
        return {to_calendar_date(d) for (d,) in completed} | {to_calendar_date(d) for (d,) in skipped}

    def _insert_ignoring_duplicates(self, model, values: dict) -> bool:
        """
        Insert one history row unless its (routine, date) key is already taken.

        Returns whether a row was written.
        """
        table = model.__table__
        dialect = self.db.get_bind().dialect.name
        if dialect == "sqlite":
            stmt = sqlite_insert(table).values(**values).on_conflict_do_nothing()
        elif dialect == "postgresql":
            stmt = pg_insert(table).values(**values).on_conflict_do_nothing()
        else:
            # No portable ON CONFLICT: isolate the insert so a duplicate only
            # rolls back this row
            try:
                with self.db.begin_nested():
                    self.db.execute(insert(table).values(**values))
            except IntegrityError:
                return False
            return True
        result = self.db.execute(stmt)
        return result.rowcount > 0

    def _catch_up(self, routine: Item, as_of, model, date_field: str, notes: str):
        """
        Write one record per unresolved occurrence from the routine's creation
        up to (not including) its next due date.

        Returns (dates processed, rows inserted, next due date or None).
        """
        spec = RecurrenceSpec.from_item(routine)
        today = to_calendar_date(as_of)
        next_due = get_next_due_date(spec, today, self.fallback_to_from_date)
        # No occurrence ahead: resolve everything strictly before as_of
        end = next_due if next_due is not None else today

        created = to_calendar_date(routine.created_at)
        recorded = self._recorded_dates(routine.id)
        candidates = [
            day for day in iter_days(created, end)
            if is_due_on_date(spec, day) and day not in recorded
        ]

        inserted = 0
        for day in candidates:
            if self._insert_ignoring_duplicates(model, {
                "routine_id": routine.id,
                date_field: day,
                "notes": notes,
            }):
                inserted += 1

        if inserted:
            record_activity(
                self.db,
                routine.id,
                ActivityAction.ROUTINE_CAUGHT_UP,
                detail=f"{notes}: {inserted} occurrence(s)",
                old_value=candidates[0].isoformat(),
                new_value=next_due.isoformat() if next_due else None
            )
        self.db.commit()

        logger.info(
            "Routine %s caught up via %s: %d of %d occurrence(s) recorded, next due %s",
            routine.id, model.__tablename__, inserted, len(candidates), next_due
        )
        return [day.isoformat() for day in candidates], inserted, next_due

    def complete_routine_to_next_due(self, routine_id: int, as_of) -> CompleteCatchUpResult:
        """Mark every unresolved past occurrence as completed."""
        routine = self.get_routine(routine_id)
        if routine is None:
            return CompleteCatchUpResult(success=False, error=ROUTINE_NOT_FOUND)

        dates, count, next_due = self._catch_up(
            routine, as_of, RoutineCompletion, "completed_date", CATCH_UP_COMPLETE_NOTE
        )
        return CompleteCatchUpResult(
            success=True,
            completed_count=count,
            next_due=next_due.isoformat() if next_due else "",
            completed_dates=dates
        )

    def skip_routine_to_next_due(self, routine_id: int, as_of) -> SkipCatchUpResult:
        """Mark every unresolved past occurrence as skipped."""
        routine = self.get_routine(routine_id)
        if routine is None:
            return SkipCatchUpResult(success=False, error=ROUTINE_NOT_FOUND)

        dates, count, next_due = self._catch_up(
            routine, as_of, RoutineSkip, "skip_date", CATCH_UP_SKIP_NOTE
        )
        return SkipCatchUpResult(
            success=True,
            skipped_count=count,
            next_due=next_due.isoformat() if next_due else "",
            skipped_dates=dates
        )

    # ------------------------------------------------------------------
    # Routine templates
    # ------------------------------------------------------------------

    def create_routine(
        self,
        title: str,
        recurrence_rule: str,
        recurrence_days=None,
        recurrence_months=None,
        recurrence_time: Optional[str] = None,
        description: Optional[str] = None,
        priority: Optional[int] = None
    ) -> Item:
        routine = Item(
            title=title,
            description=description,
            priority=priority,
            item_type=ItemType.ROUTINE,
            status=ItemStatus.PENDING,
            recurrence_rule=recurrence_rule,
            recurrence_time=recurrence_time,
            recurrence_days=encode_recurrence_list(recurrence_days),
            recurrence_months=encode_recurrence_list(recurrence_months)
        )
        self.db.add(routine)
        self.db.flush()
        record_activity(self.db, routine.id, ActivityAction.CREATED, detail=f"Routine created: {title}")
        self.db.commit()
        self.db.refresh(routine)
        return routine

    def update_routine(self, routine_id: int, **changes) -> Item:
        """Apply field changes; day/month lists are stored as JSON."""
        routine = self.get_routine(routine_id)
        if routine is None:
            raise NotFoundError(f"Routine {routine_id} not found")

        for name, value in changes.items():
            if name not in _UPDATABLE_FIELDS:
                raise ValueError(f"Routine field {name!r} cannot be updated")
            if name == "title" and not value:
                raise ValueError("Routine title cannot be empty")
            if name in _RECURRENCE_LIST_FIELDS:
                value = encode_recurrence_list(value)
            setattr(routine, name, value)

        if changes:
            record_activity(
                self.db,
                routine_id,
                ActivityAction.UPDATED,
                detail=", ".join(sorted(changes))
            )
        self.db.commit()
        self.db.refresh(routine)
        return routine

    def delete_routine(self, routine_id: int) -> None:
        """Soft delete; history rows stay in place."""
        routine = self.get_routine(routine_id)
        if routine is None:
            raise NotFoundError(f"Routine {routine_id} not found")

        routine.deleted_at = datetime.utcnow()
        record_activity(self.db, routine_id, ActivityAction.DELETED, detail=routine.title)
        self.db.commit()
