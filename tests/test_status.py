"""Estado derivado de la sesión y utilidades puras"""
from datetime import datetime, timedelta, timezone

import pytest

from shared.database.models import Event, DynamicStatus
from services.event_management.services.status import derive_status, is_over_capacity, validate_schedule
from services.queue.services.lifecycle import format_wait_time, recompute_average, waiting_estimate


NOW = datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)


def make(**kwargs) -> Event:
    values = {"stage": "OPEN", "slots_taken": 0, "capacity": None, "start_at": None, "end_at": None}
    values.update(kwargs)
    return Event(**values)


def test_open_without_schedule():
    assert derive_status(make(), NOW) == DynamicStatus.open


def test_pre_order_before_start():
    event = make(start_at=NOW + timedelta(hours=1), end_at=NOW + timedelta(hours=3))
    assert derive_status(event, NOW) == DynamicStatus.pre_order


def test_full_when_slots_reach_capacity():
    assert derive_status(make(capacity=2, slots_taken=2), NOW) == DynamicStatus.full
    assert derive_status(make(capacity=2, slots_taken=1), NOW) == DynamicStatus.open


def test_capacity_zero_or_null_is_unlimited():
    assert derive_status(make(capacity=0, slots_taken=500), NOW) == DynamicStatus.open
    assert derive_status(make(capacity=None, slots_taken=500), NOW) == DynamicStatus.open


def test_closing_inside_last_fifteen_minutes():
    event = make(start_at=NOW - timedelta(hours=1), end_at=NOW + timedelta(minutes=10))
    assert derive_status(event, NOW) == DynamicStatus.closing


def test_closing_stage_wins_over_full():
    event = make(stage="CLOSING", capacity=1, slots_taken=1)
    assert derive_status(event, NOW) == DynamicStatus.closing


def test_closing_beats_pre_order():
    # Horario corto: todavía no empieza pero ya está dentro de la ventana de cierre
    event = make(start_at=NOW + timedelta(minutes=5), end_at=NOW + timedelta(minutes=14))
    assert derive_status(event, NOW) == DynamicStatus.closing


def test_finished_after_end_and_by_stage():
    assert derive_status(make(end_at=NOW - timedelta(seconds=1)), NOW) == DynamicStatus.finished
    assert derive_status(make(stage="FINISHED", capacity=5, slots_taken=0), NOW) == DynamicStatus.finished


def test_over_capacity_only_when_exceeded():
    assert not is_over_capacity(make(capacity=2, slots_taken=2))
    assert is_over_capacity(make(capacity=2, slots_taken=3))
    assert not is_over_capacity(make(capacity=0, slots_taken=3))


def test_validate_schedule_minimum_duration():
    assert validate_schedule(NOW, NOW + timedelta(minutes=14)) == "Jadwal pelayanan minimal harus 15 menit."
    assert validate_schedule(NOW, NOW + timedelta(minutes=15)) is None
    assert validate_schedule(None, NOW) is None


@pytest.mark.parametrize("minutes,label", [
    (0, "Segera"),
    (0.5, "Segera"),
    (12, "12 m"),
    (60, "1 j"),
    (65, "1 j 5 m"),
    (130, "2 j 10 m"),
])
def test_format_wait_time(minutes, label):
    assert format_wait_time(minutes) == label


def test_recompute_average_rounds_up():
    assert recompute_average(0, 0) == 0
    assert recompute_average(300, 1) == 5
    assert recompute_average(301, 1) == 6
    assert recompute_average(420, 2) == 4


def test_waiting_estimate():
    minutes, eta = waiting_estimate(3, 5, NOW)
    assert minutes == 15
    assert eta == NOW + timedelta(minutes=15)
