from datetime import UTC, datetime, timedelta

from issuewatch.models import ChangeVerdict, Record, RecordState
from issuewatch.rules.detector import ChangeDetector


T0 = datetime(2026, 2, 10, 12, 0, tzinfo=UTC)


def _record(updated_at: datetime) -> Record:
    return Record(record_id="10001", key="ABC-1", summary="s", status="Open", updated_at=updated_at)


def _state(last_notified_at: datetime | None) -> RecordState:
    return RecordState(
        record_id="10001",
        key="ABC-1",
        source_id="s1",
        query_id="q1",
        summary="s",
        status="Open",
        updated_at=T0,
        last_notified_at=last_notified_at,
    )


def test_no_previous_state_is_new() -> None:
    verdict = ChangeDetector().decide(_record(T0), None)
    assert verdict is ChangeVerdict.NEW
    assert verdict.should_notify


def test_never_notified_previous_state_is_changed() -> None:
    assert ChangeDetector().decide(_record(T0), _state(None)) is ChangeVerdict.CHANGED


def test_modified_after_last_notification_is_changed() -> None:
    verdict = ChangeDetector().decide(_record(T0 + timedelta(seconds=1)), _state(T0))
    assert verdict is ChangeVerdict.CHANGED


def test_equal_timestamp_is_unchanged() -> None:
    verdict = ChangeDetector().decide(_record(T0), _state(T0))
    assert verdict is ChangeVerdict.UNCHANGED
    assert not verdict.should_notify


def test_older_timestamp_is_unchanged() -> None:
    assert ChangeDetector().decide(_record(T0 - timedelta(minutes=5)), _state(T0)) is ChangeVerdict.UNCHANGED
