"""Weekday slot runner and log retention."""

from datetime import UTC, datetime, timedelta

import pytest
import sqlalchemy as sa

from agents.dunning import runner as runner_module
from agents.dunning.dto import RunSummary
from agents.dunning.runner import ClockRunner, cleanup_logs, parse_hours, run_forever
from backend.core.cache_store import AUTOMATION_LOGS, EMAIL_LOGS, SYNC_LOGS

# 2026-10-14 is a Wednesday; 13:00 UTC is 09:00 in New York
WEDNESDAY_9AM = datetime(2026, 10, 14, 13, 0, tzinfo=UTC)


class StubAdmin:
    def __init__(self, sync_error=None):
        self.calls = []
        self.sync_error = sync_error

    def sync(self):
        self.calls.append(("sync",))
        if self.sync_error:
            raise self.sync_error
        return {"status": "completed"}

    def run(self, test_mode=False, triggered_by="api"):
        self.calls.append(("run", test_mode, triggered_by))
        return RunSummary(triggered_by=triggered_by, test_mode=test_mode, status="completed")

    def stats(self, days=30):
        self.calls.append(("stats", days))
        return {"days": days, "total_runs": 3, "recent_logs": []}


@pytest.fixture
def admin():
    return StubAdmin()


@pytest.fixture
def make_runner(engine, clock, admin):
    def _make(**kwargs):
        return ClockRunner(
            engine=engine,
            admin=kwargs.pop("admin", admin),
            clock=clock,
            hours=[9, 14],
            timezone="America/New_York",
            retention_days=90,
            **kwargs,
        )

    return _make


class TestSlots:
    def test_slot_fires_once(self, make_runner, admin):
        runner = make_runner()

        assert runner.tick() == ["run"]
        assert runner.tick() == []
        assert admin.calls == [("sync",), ("run", False, "scheduler")]

    def test_only_configured_hours_fire(self, make_runner, clock, admin):
        runner = make_runner()
        runner.tick()

        clock.advance(hours=1)
        assert runner.tick() == []
        clock.advance(hours=4)
        assert runner.tick() == ["run"]
        assert [c for c in admin.calls if c[0] == "run"] == [("run", False, "scheduler")] * 2

    def test_fired_slots_only_cover_the_current_day(self, make_runner, clock, admin):
        runner = make_runner()
        runner.tick()
        clock.advance(hours=5)
        runner.tick()
        assert runner._fired_hours == {9, 14}

        # Thursday 09:00 New York
        clock.advance(hours=19)
        assert runner.tick() == ["run"]
        assert runner._fired_hours == {9}
        assert len([c for c in admin.calls if c[0] == "run"]) == 3

    def test_weekends_are_skipped(self, make_runner, clock, admin):
        clock.now = datetime(2026, 10, 17, 13, 0, tzinfo=UTC)

        assert make_runner().tick() == []
        assert admin.calls == []

    def test_monday_first_slot_logs_weekly_stats(self, make_runner, clock, admin):
        clock.now = datetime(2026, 10, 19, 13, 0, tzinfo=UTC)
        runner = make_runner()

        assert runner.tick() == ["weekly_stats", "run"]
        clock.advance(hours=5)
        assert runner.tick() == ["run"]
        assert [c for c in admin.calls if c[0] == "stats"] == [("stats", 7)]

    def test_sync_failure_does_not_block_the_run(self, make_runner):
        admin = StubAdmin(sync_error=RuntimeError("erp down"))

        assert make_runner(admin=admin).tick() == ["run"]
        assert admin.calls[-1] == ("run", False, "scheduler")

    def test_first_of_month_cleans_up_once(self, make_runner, clock):
        # 2026-12-01 is a Tuesday
        clock.now = datetime(2026, 12, 1, 12, 0, tzinfo=UTC)
        runner = make_runner()

        assert runner.tick() == ["cleanup"]
        clock.advance(hours=2)
        assert runner.tick() == ["run"]


class TestParseHours:
    def test_sorted_and_deduplicated(self):
        assert parse_hours(" 14, 9,9,") == [9, 14]

    @pytest.mark.parametrize("value", ["24", "nine"])
    def test_invalid(self, value):
        with pytest.raises(ValueError):
            parse_hours(value)


class TestCleanup:
    def test_old_logs_are_deleted(self, engine, now):
        old, recent = now - timedelta(days=91), now - timedelta(days=10)
        with engine.begin() as conn:
            for started in (old, recent):
                conn.execute(sa.insert(AUTOMATION_LOGS).values(triggered_by="cli", run_started_at=started))
                conn.execute(sa.insert(SYNC_LOGS).values(sync_started_at=started))
                conn.execute(
                    sa.insert(EMAIL_LOGS).values(recipient_email="pat@example.com", status="sent", created_at=started)
                )

        deleted = cleanup_logs(engine, 90, now)

        assert deleted == {"automation_logs": 1, "sync_logs": 1, "email_logs": 1}
        with engine.connect() as conn:
            for table in (AUTOMATION_LOGS, SYNC_LOGS, EMAIL_LOGS):
                assert conn.execute(sa.select(sa.func.count()).select_from(table)).scalar_one() == 1


class TestRunForever:
    def test_loop_stops_on_the_stop_event(self, monkeypatch):
        monkeypatch.setattr(runner_module, "_setup_signals", lambda: None)

        class OneTick:
            hours = [9]
            tz = "UTC"
            ticks = 0

            def tick(self):
                self.ticks += 1
                runner_module._stop_event.set()

        runner = OneTick()
        try:
            assert run_forever(runner, poll_s=1) == 0
        finally:
            runner_module._stop_event.clear()
        assert runner.ticks == 1
