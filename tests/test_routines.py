"""
Tests for the routine engine.

Every call is evaluated for an explicit date; nothing here depends on the
wall clock.
"""
import pytest
from datetime import date, datetime

from worktrack.models.audit import Activity, ActivityAction
from worktrack.models.domain import RoutineCompletion, RoutineSkip
from worktrack.services.errors import NotFoundError, RecurrenceFormatError
from worktrack.services.routines import (
    CATCH_UP_COMPLETE_NOTE,
    CATCH_UP_SKIP_NOTE,
    OVERDUE_WINDOW_DAYS,
    ROUTINE_NOT_FOUND,
    RoutineEngine,
)


@pytest.fixture
def engine(db_session):
    return RoutineEngine(db_session)


def completion_dates(db_session, routine_id):
    rows = db_session.query(RoutineCompletion.completed_date).filter(
        RoutineCompletion.routine_id == routine_id
    ).order_by(RoutineCompletion.completed_date).all()
    return [d.isoformat() for (d,) in rows]


def skip_dates(db_session, routine_id):
    rows = db_session.query(RoutineSkip.skip_date).filter(
        RoutineSkip.routine_id == routine_id
    ).order_by(RoutineSkip.skip_date).all()
    return [d.isoformat() for (d,) in rows]


def actions(db_session, item_id):
    rows = db_session.query(Activity.action).filter(
        Activity.item_id == item_id
    ).order_by(Activity.id).all()
    return [a for (a,) in rows]


class TestOverdue:
    """Overdue occurrences are derived from rule plus history."""

    def test_daily_routine_nine_days_behind(self, engine, make_routine):
        routine = make_routine(created=datetime(2025, 1, 1, 9, 30))

        overdue = engine.get_overdue_routines(date(2025, 1, 10))

        assert len(overdue) == 1
        assert overdue[0].routine.id == routine.id
        assert overdue[0].days_overdue == 9
        # Most recent first; as_of itself is due, not overdue
        assert overdue[0].overdue_dates[0] == "2025-01-09"
        assert overdue[0].overdue_dates[-1] == "2025-01-01"

    def test_days_before_creation_are_never_overdue(self, engine, make_routine):
        make_routine(created=datetime(2025, 1, 8, 23, 0))
        overdue = engine.get_overdue_routines(date(2025, 1, 10))
        assert overdue[0].overdue_dates == ["2025-01-09", "2025-01-08"]

    def test_window_is_capped(self, engine, make_routine):
        make_routine(created=datetime(2024, 10, 1))
        overdue = engine.get_overdue_routines(date(2025, 1, 10))
        assert overdue[0].days_overdue == OVERDUE_WINDOW_DAYS
        assert overdue[0].overdue_dates[-1] == "2024-12-11"

    def test_completed_and_skipped_dates_are_not_overdue(self, engine, make_routine):
        routine = make_routine(created=datetime(2025, 1, 1))
        engine.complete_routine(routine.id, date(2025, 1, 9))
        engine.skip_routine(routine.id, date(2025, 1, 8))

        overdue = engine.get_overdue_routines(date(2025, 1, 10))

        assert "2025-01-09" not in overdue[0].overdue_dates
        assert "2025-01-08" not in overdue[0].overdue_dates
        assert overdue[0].days_overdue == 7

    def test_weekly_routine_only_counts_its_days(self, engine, make_routine):
        make_routine(rule="weekly", days=["mon"], created=datetime(2025, 1, 1))
        overdue = engine.get_overdue_routines(date(2025, 1, 22))
        assert overdue[0].overdue_dates == ["2025-01-20", "2025-01-13", "2025-01-06"]

    def test_fully_resolved_routine_is_omitted(self, engine, make_routine):
        routine = make_routine(created=datetime(2025, 1, 9))
        engine.complete_routine(routine.id, date(2025, 1, 9))
        assert engine.get_overdue_routines(date(2025, 1, 10)) == []

    def test_deleted_routines_are_ignored(self, engine, make_routine):
        routine = make_routine(created=datetime(2025, 1, 1))
        engine.delete_routine(routine.id)
        assert engine.get_overdue_routines(date(2025, 1, 10)) == []

    def test_routines_are_ordered_by_title(self, engine, make_routine):
        make_routine(title="Stretch", created=datetime(2025, 1, 1))
        make_routine(title="Journal", created=datetime(2025, 1, 1))
        titles = [o.routine.title for o in engine.get_overdue_routines(date(2025, 1, 3))]
        assert titles == ["Journal", "Stretch"]

    def test_malformed_recurrence_data_propagates(self, engine, make_routine):
        make_routine(rule="weekly", days="[mon", created=datetime(2025, 1, 1))
        with pytest.raises(RecurrenceFormatError):
            engine.get_overdue_routines(date(2025, 1, 10))


class TestSingleDate:
    """complete/skip/uncomplete/unskip for one calendar date."""

    def test_complete_is_idempotent(self, db_session, engine, make_routine):
        routine = make_routine()

        first = engine.complete_routine(routine.id, date(2025, 1, 5), notes="Done early")
        second = engine.complete_routine(routine.id, datetime(2025, 1, 5, 21, 0))

        assert first.success and not first.already_completed
        assert second.success and second.already_completed
        assert second.completion_id == first.completion_id
        assert completion_dates(db_session, routine.id) == ["2025-01-05"]

    def test_skip_is_idempotent(self, db_session, engine, make_routine):
        routine = make_routine()

        first = engine.skip_routine(routine.id, date(2025, 1, 5))
        second = engine.skip_routine(routine.id, date(2025, 1, 5))

        assert not first.already_skipped
        assert second.already_skipped
        assert second.skip_id == first.skip_id
        assert skip_dates(db_session, routine.id) == ["2025-01-05"]

    def test_skip_leaves_completed_date_alone(self, db_session, engine, make_routine):
        routine = make_routine()
        engine.complete_routine(routine.id, date(2025, 1, 5))

        result = engine.skip_routine(routine.id, date(2025, 1, 5))

        assert result.success
        assert result.already_completed
        assert result.skip_id is None
        assert skip_dates(db_session, routine.id) == []

    def test_complete_supersedes_skip(self, db_session, engine, make_routine):
        routine = make_routine()
        engine.skip_routine(routine.id, date(2025, 1, 5))

        result = engine.complete_routine(routine.id, date(2025, 1, 5))

        assert result.superseded_skip
        assert skip_dates(db_session, routine.id) == []
        assert completion_dates(db_session, routine.id) == ["2025-01-05"]

    def test_uncomplete(self, db_session, engine, make_routine):
        routine = make_routine()
        engine.complete_routine(routine.id, date(2025, 1, 5))

        assert engine.uncomplete_routine(routine.id, date(2025, 1, 5)).deleted
        assert not engine.uncomplete_routine(routine.id, date(2025, 1, 5)).deleted
        assert completion_dates(db_session, routine.id) == []

    def test_unskip(self, db_session, engine, make_routine):
        routine = make_routine()
        engine.skip_routine(routine.id, date(2025, 1, 5))

        result = engine.unskip_routine(routine.id, date(2025, 1, 5))

        assert result.success and result.deleted
        assert skip_dates(db_session, routine.id) == []

    def test_unknown_routine_is_reported(self, engine, make_item):
        task = make_item()
        assert engine.complete_routine(999, date(2025, 1, 5)).error == ROUTINE_NOT_FOUND
        assert engine.skip_routine(999, date(2025, 1, 5)).error == ROUTINE_NOT_FOUND
        # A task is not a routine
        assert not engine.complete_routine(task.id, date(2025, 1, 5)).success

    def test_history_activities(self, db_session, engine, make_routine):
        routine = make_routine()
        engine.complete_routine(routine.id, date(2025, 1, 5))
        engine.uncomplete_routine(routine.id, date(2025, 1, 5))
        engine.skip_routine(routine.id, date(2025, 1, 6))
        engine.unskip_routine(routine.id, date(2025, 1, 6))

        assert actions(db_session, routine.id) == [
            ActivityAction.ROUTINE_COMPLETED,
            ActivityAction.ROUTINE_UNCOMPLETED,
            ActivityAction.ROUTINE_SKIPPED,
            ActivityAction.ROUTINE_UNSKIPPED,
        ]


class TestCatchUp:
    """Bulk completion/skip up to the next due date."""

    def test_complete_to_next_due(self, db_session, engine, make_routine):
        routine = make_routine(created=datetime(2025, 1, 1, 9, 30))

        result = engine.complete_routine_to_next_due(routine.id, date(2025, 1, 10))

        assert result.success
        assert result.completed_count == 9
        assert result.next_due == "2025-01-10"
        assert result.completed_dates[0] == "2025-01-01"
        assert result.completed_dates[-1] == "2025-01-09"
        assert engine.get_overdue_routines(date(2025, 1, 10)) == []

        notes = {n for (n,) in db_session.query(RoutineCompletion.notes).all()}
        assert notes == {CATCH_UP_COMPLETE_NOTE}

    def test_repeat_call_changes_nothing(self, db_session, engine, make_routine):
        routine = make_routine(created=datetime(2025, 1, 1))
        engine.complete_routine_to_next_due(routine.id, date(2025, 1, 10))

        again = engine.complete_routine_to_next_due(routine.id, date(2025, 1, 10))

        assert again.completed_count == 0
        assert again.completed_dates == []
        assert len(completion_dates(db_session, routine.id)) == 9

    def test_existing_history_is_left_alone(self, db_session, engine, make_routine):
        routine = make_routine(created=datetime(2025, 1, 1))
        engine.complete_routine(routine.id, date(2025, 1, 3), notes="On time")
        engine.skip_routine(routine.id, date(2025, 1, 4))

        result = engine.complete_routine_to_next_due(routine.id, date(2025, 1, 10))

        assert result.completed_count == 7
        assert "2025-01-03" not in result.completed_dates
        assert "2025-01-04" not in result.completed_dates
        assert skip_dates(db_session, routine.id) == ["2025-01-04"]
        note = db_session.query(RoutineCompletion.notes).filter(
            RoutineCompletion.completed_date == date(2025, 1, 3)
        ).scalar()
        assert note == "On time"

    def test_weekly_catch_up(self, engine, make_routine):
        routine = make_routine(rule="weekly", days=["mon"], created=datetime(2025, 1, 1))

        result = engine.complete_routine_to_next_due(routine.id, date(2025, 1, 22))

        assert result.completed_dates == ["2025-01-06", "2025-01-13", "2025-01-20"]
        assert result.next_due == "2025-01-27"

    def test_skip_to_next_due(self, db_session, engine, make_routine):
        routine = make_routine(created=datetime(2025, 1, 1))

        result = engine.skip_routine_to_next_due(routine.id, date(2025, 1, 4))

        assert result.skipped_count == 3
        assert result.skipped_dates == ["2025-01-01", "2025-01-02", "2025-01-03"]
        assert result.next_due == "2025-01-04"
        assert completion_dates(db_session, routine.id) == []
        notes = {n for (n,) in db_session.query(RoutineSkip.notes).all()}
        assert notes == {CATCH_UP_SKIP_NOTE}

    def test_catch_up_is_logged_once(self, db_session, engine, make_routine):
        routine = make_routine(created=datetime(2025, 1, 1))
        engine.skip_routine_to_next_due(routine.id, date(2025, 1, 4))
        engine.skip_routine_to_next_due(routine.id, date(2025, 1, 4))

        assert actions(db_session, routine.id).count(ActivityAction.ROUTINE_CAUGHT_UP) == 1

    def test_repeat_skip_catch_up_changes_nothing(self, db_session, engine, make_routine):
        routine = make_routine(created=datetime(2025, 1, 1))
        first = engine.skip_routine_to_next_due(routine.id, date(2025, 1, 10))

        again = engine.skip_routine_to_next_due(routine.id, date(2025, 1, 10))

        assert first.skipped_count == 9
        assert again.success
        assert again.skipped_count == 0
        assert again.skipped_dates == []
        assert again.next_due == "2025-01-10"
        assert len(skip_dates(db_session, routine.id)) == 9

    def test_duplicate_insert_is_ignored(self, db_session, engine, make_routine):
        routine = make_routine()
        row = {"routine_id": routine.id, "skip_date": date(2025, 1, 3), "notes": None}

        assert engine._insert_ignoring_duplicates(RoutineSkip, row) is True
        assert engine._insert_ignoring_duplicates(RoutineSkip, row) is False
        db_session.commit()
        assert skip_dates(db_session, routine.id) == ["2025-01-03"]

    def test_duplicate_insert_is_ignored_without_on_conflict(
        self, db_session, engine, make_routine, monkeypatch
    ):
        """Dialects without ON CONFLICT fall back to a savepoint per row."""
        routine = make_routine()
        engine.complete_routine(routine.id, date(2025, 1, 3))
        monkeypatch.setattr(db_session.get_bind().dialect, "name", "generic")

        duplicate = {"routine_id": routine.id, "completed_date": date(2025, 1, 3), "notes": None}
        fresh = {"routine_id": routine.id, "completed_date": date(2025, 1, 4), "notes": None}

        assert engine._insert_ignoring_duplicates(RoutineCompletion, duplicate) is False
        assert engine._insert_ignoring_duplicates(RoutineCompletion, fresh) is True
        db_session.commit()
        assert completion_dates(db_session, routine.id) == ["2025-01-03", "2025-01-04"]

    def test_batch_count_skips_rows_already_taken(self, db_session, engine, make_routine, monkeypatch):
        """A row written between the diff and the insert is not counted."""
        routine = make_routine(created=datetime(2025, 1, 1))
        recorded = engine._recorded_dates
        # Hide 2025-01-02 from the diff so the insert itself hits the unique key
        engine.skip_routine(routine.id, date(2025, 1, 2))
        monkeypatch.setattr(
            engine, "_recorded_dates",
            lambda routine_id: recorded(routine_id) - {date(2025, 1, 2)}
        )

        result = engine.skip_routine_to_next_due(routine.id, date(2025, 1, 4))

        assert result.skipped_dates == ["2025-01-01", "2025-01-02", "2025-01-03"]
        assert result.skipped_count == 2
        assert skip_dates(db_session, routine.id) == ["2025-01-01", "2025-01-02", "2025-01-03"]

    def test_unknown_routine(self, engine):
        assert engine.complete_routine_to_next_due(42, date(2025, 1, 4)).error == ROUTINE_NOT_FOUND
        assert engine.skip_routine_to_next_due(42, date(2025, 1, 4)).error == ROUTINE_NOT_FOUND

    def test_exhausted_custom_rule_falls_back_to_as_of(self, engine, make_routine):
        routine = make_routine(rule="custom", days=["2025-01-03"], created=datetime(2025, 1, 1))

        result = engine.complete_routine_to_next_due(routine.id, date(2025, 1, 10))

        assert result.completed_dates == ["2025-01-03"]
        assert result.next_due == "2025-01-10"

    def test_exhausted_custom_rule_without_fallback(self, db_session, make_routine):
        engine = RoutineEngine(db_session, fallback_to_from_date=False)
        routine = make_routine(rule="custom", days=["2025-01-03"], created=datetime(2025, 1, 1))

        result = engine.complete_routine_to_next_due(routine.id, date(2025, 1, 10))

        assert result.completed_dates == ["2025-01-03"]
        assert result.next_due == ""

    def test_malformed_recurrence_data_propagates(self, engine, make_routine):
        routine = make_routine(rule="monthly", days="not json")
        with pytest.raises(RecurrenceFormatError):
            engine.complete_routine_to_next_due(routine.id, date(2025, 1, 10))


class TestDueAndListing:
    """Due-today view, listing and history."""

    def test_due_on_date_with_completion_state(self, engine, make_routine):
        daily = make_routine(title="Water plants")
        make_routine(title="Pay rent", rule="monthly", days=[1])
        make_routine(title="Review week", rule="weekly", days=["mon"])
        engine.complete_routine(daily.id, date(2025, 1, 6))

        due = engine.get_routines_due(date(2025, 1, 6))

        by_title = {r.routine.title: r for r in due}
        assert set(by_title) == {"Water plants", "Review week"}
        assert by_title["Water plants"].completed_today
        assert by_title["Water plants"].completion_count == 1
        assert by_title["Water plants"].last_completed == "2025-01-06"
        assert not by_title["Review week"].completed_today
        assert all(r.is_due_today for r in due)

    def test_due_ordering(self, engine, make_routine):
        make_routine(title="Zebra", recurrence_time="07:00")
        make_routine(title="Alpha")
        make_routine(title="Middle", recurrence_time="18:30")
        make_routine(title="Beta", recurrence_time="07:00")

        titles = [r.routine.title for r in engine.get_routines_due(date(2025, 1, 6))]

        assert titles == ["Beta", "Zebra", "Middle", "Alpha"]

    def test_routine_without_rule_is_never_due(self, engine, make_routine):
        make_routine(rule=None)
        assert engine.get_routines_due(date(2025, 1, 6)) == []

    def test_get_routines_lists_stats(self, engine, make_routine):
        routine = make_routine(title="Floss")
        make_routine(title="Exercise")
        engine.complete_routine(routine.id, date(2025, 1, 2))
        engine.complete_routine(routine.id, date(2025, 1, 4))

        listing = engine.get_routines()

        assert [r.routine.title for r in listing] == ["Exercise", "Floss"]
        assert listing[0].completion_count == 0
        assert listing[0].last_completed is None
        assert listing[1].completion_count == 2
        assert listing[1].last_completed == "2025-01-04"
        assert listing[1].is_due_today is None

    def test_history_is_most_recent_first(self, engine, make_routine):
        routine = make_routine()
        for day in (2, 5, 3):
            engine.complete_routine(routine.id, date(2025, 1, day))

        history = engine.get_routine_history(routine.id, limit=2)

        assert [h.completed_date for h in history] == [date(2025, 1, 5), date(2025, 1, 3)]


class TestTemplates:
    """Creating, updating and deleting routine templates."""

    def test_create_encodes_lists(self, db_session, engine):
        routine = engine.create_routine(
            title="Gym",
            recurrence_rule="weekly",
            recurrence_days=["mon", "thu"],
            recurrence_time="06:30"
        )
        assert routine.recurrence_days == '["mon", "thu"]'
        assert routine.recurrence_months is None
        assert actions(db_session, routine.id) == [ActivityAction.CREATED]

    def test_update(self, db_session, engine, make_routine):
        routine = make_routine()

        updated = engine.update_routine(
            routine.id, recurrence_rule="bimonthly", recurrence_months=[3, 9]
        )

        assert updated.recurrence_rule == "bimonthly"
        assert updated.recurrence_months == "[3, 9]"
        assert engine.get_routines_due(date(2025, 3, 1))[0].routine.id == routine.id
        assert ActivityAction.UPDATED in actions(db_session, routine.id)

    def test_update_rejects_unknown_fields(self, engine, make_routine):
        routine = make_routine()
        with pytest.raises(ValueError):
            engine.update_routine(routine.id, item_type="task")

    def test_update_rejects_empty_title(self, db_session, engine, make_routine):
        routine = make_routine(title="Floss")
        with pytest.raises(ValueError):
            engine.update_routine(routine.id, title=None)
        db_session.refresh(routine)
        assert routine.title == "Floss"

    def test_update_missing_routine(self, engine):
        with pytest.raises(NotFoundError):
            engine.update_routine(404, title="Nope")

    def test_delete_is_soft(self, db_session, engine, make_routine):
        routine = make_routine()
        engine.complete_routine(routine.id, date(2025, 1, 2))

        engine.delete_routine(routine.id)

        assert engine.get_routine(routine.id) is None
        assert engine.get_routines() == []
        assert completion_dates(db_session, routine.id) == ["2025-01-02"]
        with pytest.raises(NotFoundError):
            engine.delete_routine(routine.id)
