import random
import threading
from datetime import datetime, timedelta, timezone

import pytest

from autonews import scheduler as scheduler_module
from autonews.config import load_config
from autonews.generation import GenerationError
from autonews.models import GenerationAuditEntry
from autonews.pipelines.autonews_pass import PassResult
from autonews.scheduler import GenerationScheduler, is_within_time_window
from autonews.storage import insert_generation_log, list_generation_logs
from autonews.utils import get_zone, to_utc_iso

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


def _audit(run_at, saved, triggered_by="cron-auto-newsroom"):
    return GenerationAuditEntry(
        run_at=to_utc_iso(run_at),
        model="m",
        count_requested=saved,
        count_generated=saved,
        count_saved=saved,
        status="success",
        reason=None,
        error_message=None,
        duration_ms=1,
        request_status="draft",
        categories=[],
        samples=[],
        triggered_by=triggered_by,
    )


def _scheduler(conn, logger, env=None, clock_at=NOW, rng=None):
    config = load_config(environ=env or {})
    return GenerationScheduler(conn, config, logger, clock=lambda: clock_at, rng=rng)


def _success(saved=1):
    return PassResult(
        status="success",
        reason=None,
        requested=saved,
        generated=saved,
        saved=saved,
        seeds_count=3,
        model="model-x",
        samples=[{"slug": f"story-{index}"} for index in range(saved)],
    )


@pytest.mark.parametrize(
    "hour, start, end, expected",
    [
        (0, 0, 24, True),
        (23, 0, 24, True),
        (8, 8, 20, True),
        (20, 8, 20, False),
        (7, 8, 20, False),
        (23, 22, 6, True),
        (3, 22, 6, True),
        (12, 22, 6, False),
        (5, 5, 5, True),
    ],
)
def test_time_window(hour, start, end, expected):
    assert is_within_time_window(hour, start, end) is expected


def test_allowed_count_uses_hour_and_day_usage(conn, logger):
    insert_generation_log(conn, _audit(NOW - timedelta(minutes=10), 6))
    insert_generation_log(conn, _audit(NOW - timedelta(minutes=50), 4))
    insert_generation_log(conn, _audit(NOW - timedelta(hours=3), 5))
    insert_generation_log(conn, _audit(NOW - timedelta(days=1), 100))
    insert_generation_log(conn, _audit(NOW - timedelta(minutes=5), 9, triggered_by="manual"))

    sched = _scheduler(conn, logger, env={"AN_MAX_PER_RUN": "5", "AN_MAX_PER_DAY": "250"})
    allowance = sched.compute_allowed_count()
    assert (allowance.used_hour, allowance.used_day) == (10, 15)
    assert allowance.allowed == 2

    tight_day = _scheduler(conn, logger, env={"AN_MAX_PER_RUN": "5", "AN_MAX_PER_DAY": "16"})
    assert tight_day.compute_allowed_count().allowed == 1

    single = _scheduler(conn, logger, env={"AN_MAX_PER_RUN": "1"})
    assert single.compute_allowed_count().allowed == 1


def test_day_usage_follows_local_midnight(conn, logger):
    if get_zone("Asia/Kolkata").key == "UTC":
        pytest.skip("tz database not available")
    # 19:00 UTC on the 9th is 00:30 on the 10th in India.
    insert_generation_log(conn, _audit(datetime(2026, 3, 9, 19, 0, tzinfo=timezone.utc), 3))
    kolkata = _scheduler(conn, logger, env={"AN_TIMEZONE": "Asia/Kolkata"})
    utc = _scheduler(conn, logger)

    assert kolkata.compute_allowed_count().used_day == 3
    assert utc.compute_allowed_count().used_day == 0


def test_successful_run_records_audit(monkeypatch, conn, logger):
    calls = []

    def _fake_pass(conn_arg, config, logger_arg, allowed, categories=None, now=None):
        calls.append((allowed, categories, now))
        return _success(saved=1)

    monkeypatch.setattr(scheduler_module, "run_autonews_pass", _fake_pass)
    sched = _scheduler(conn, logger)

    outcome = sched.run_once()

    assert outcome.status == "success"
    assert calls == [(1, [], NOW)]
    logs = list_generation_logs(conn)
    assert len(logs) == 1
    assert logs[0].count_saved == 1
    assert logs[0].model == "model-x"
    assert logs[0].request_status == "draft"
    assert logs[0].samples == [{"slug": "story-0"}]
    assert sched.state.today_count_saved == 1
    assert sched.state.last_status == "success"
    assert sched.state.in_flight is False


def test_forced_categories_pick_one(monkeypatch, conn, logger):
    seen = []

    def _fake_pass(conn_arg, config, logger_arg, allowed, categories=None, now=None):
        seen.append(categories)
        return _success()

    monkeypatch.setattr(scheduler_module, "run_autonews_pass", _fake_pass)
    sched = _scheduler(conn, logger, env={"AN_CATEGORIES": "Politics,Tech"}, rng=random.Random(7))

    sched.run_once()

    assert len(seen[0]) == 1
    assert seen[0][0] in {"Politics", "Tech"}
    assert list_generation_logs(conn)[0].categories == seen[0]


def test_overlapping_run_is_skipped_as_in_flight(monkeypatch, conn, logger):
    inner = {}
    sched = _scheduler(conn, logger)

    def _fake_pass(*_args, **_kwargs):
        inner["in_flight"] = sched.state.in_flight
        inner["outcome"] = sched.run_once(reason="overlap")
        return _success()

    monkeypatch.setattr(scheduler_module, "run_autonews_pass", _fake_pass)
    outer = sched.run_once()

    assert inner["in_flight"] is True
    assert inner["outcome"].status == "skipped"
    assert inner["outcome"].reason == "in_flight"
    assert outer.status == "success"
    assert len(list_generation_logs(conn)) == 2
    assert sched.state.in_flight is False


def test_in_flight_skip_from_other_thread_leaves_running_transaction_alone(
    monkeypatch, conn, logger
):
    sched = _scheduler(conn, logger)
    skipped = []

    def _fake_pass(conn_arg, *_args, **_kwargs):
        conn_arg.execute(
            "INSERT INTO settings (key, value, updated_at) VALUES ('scratch', '1', 'now')"
        )
        worker = threading.Thread(target=lambda: skipped.append(sched.run_once(reason="overlap")))
        worker.start()
        worker.join()
        conn_arg.rollback()
        return _success()

    monkeypatch.setattr(scheduler_module, "run_autonews_pass", _fake_pass)
    outer = sched.run_once()

    assert skipped[0].reason == "in_flight"
    assert outer.status == "success"
    scratch = conn.execute("SELECT COUNT(*) FROM settings WHERE key = 'scratch'").fetchone()[0]
    assert scratch == 0
    reasons = sorted(str(entry.reason) for entry in list_generation_logs(conn))
    assert reasons == ["None", "in_flight"]


def test_failed_run_records_error_with_zero_saved(monkeypatch, conn, logger):
    def _failing_pass(*_args, **_kwargs):
        raise GenerationError("empty_model_result")

    monkeypatch.setattr(scheduler_module, "run_autonews_pass", _failing_pass)
    sched = _scheduler(conn, logger)

    outcome = sched.run_once()

    assert outcome.status == "error"
    log = list_generation_logs(conn)[0]
    assert log.count_saved == 0
    assert log.error_message == "empty_model_result"
    assert sched.state.last_status == "error"
    assert sched.state.in_flight is False

    # A later tick runs normally.
    monkeypatch.setattr(scheduler_module, "run_autonews_pass", lambda *a, **k: _success())
    assert sched.run_once().status == "success"


def test_outside_window_skips_without_running(monkeypatch, conn, logger):
    monkeypatch.setattr(
        scheduler_module, "run_autonews_pass", lambda *a, **k: pytest.fail("pass must not run")
    )
    sched = _scheduler(
        conn,
        logger,
        env={"AN_WINDOW_START_HOUR": "8", "AN_WINDOW_END_HOUR": "20"},
        clock_at=NOW.replace(hour=22),
    )

    outcome = sched.run_once()

    assert (outcome.status, outcome.reason) == ("skipped", "outside_window")
    assert list_generation_logs(conn)[0].reason == "outside_window"


def test_exhausted_quota_skips(monkeypatch, conn, logger):
    monkeypatch.setattr(
        scheduler_module, "run_autonews_pass", lambda *a, **k: pytest.fail("pass must not run")
    )
    insert_generation_log(conn, _audit(NOW - timedelta(minutes=20), 2))
    sched = _scheduler(conn, logger, env={"AN_MAX_PER_HOUR": "2"})

    outcome = sched.run_once()

    assert (outcome.status, outcome.reason) == ("skipped", "no_allowance")
    assert outcome.audit.count_saved == 0


def test_run_loop_stops_on_event(monkeypatch, conn, logger):
    stop = threading.Event()
    runs = []

    def _fake_pass(*_args, **_kwargs):
        runs.append(1)
        stop.set()
        return _success()

    monkeypatch.setattr(scheduler_module, "run_autonews_pass", _fake_pass)
    sched = _scheduler(conn, logger)

    assert sched.run_loop(stop_event=stop) == 1
    assert runs == [1]
    assert sched.state.next_run_at is None


def test_run_loop_respects_max_runs(monkeypatch, conn, logger):
    monkeypatch.setattr(scheduler_module, "run_autonews_pass", lambda *a, **k: _success())
    sched = _scheduler(conn, logger)

    assert sched.run_loop(max_runs=1) == 1


def test_status_snapshot(conn, logger):
    sched = _scheduler(conn, logger, env={"AN_CATEGORIES": "Sports"})
    snapshot = sched.status_snapshot()

    assert snapshot["interval_seconds"] == 300
    assert snapshot["categories"] == ["Sports"]
    assert snapshot["in_flight"] is False
    assert snapshot["last_run_at"] is None
