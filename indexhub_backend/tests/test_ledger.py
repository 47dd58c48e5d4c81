from __future__ import annotations

import threading

import pytest

from indexhub_backend.errors import DuplicateInFlightJob, InvalidStateTransition, NotFound
from indexhub_backend.models.entities import JobRun
from indexhub_backend.scheduling import JobRunLedger, cap_log


@pytest.fixture(name="ledger")
def fixture_ledger(db_manager):
    return JobRunLedger(db_manager, log_limit_bytes=1024)


def test_lifecycle_success(ledger):
    run = ledger.create(1, "scheduler_git")
    assert run.state == "pending"

    run = ledger.start(run.id)
    assert run.state == "running"
    assert run.started_at is not None

    run = ledger.finish(run.id, 0, stdout="done\n")
    assert run.state == "succeeded"
    assert run.exit_code == 0
    assert run.finished_at >= run.started_at
    assert run.stdout == "done\n"


def test_non_zero_exit_is_failure(ledger):
    run = ledger.start(ledger.create(1, "scheduler_git").id)

    run = ledger.finish(run.id, 3, stderr="boom")

    assert run.state == "failed"
    assert run.exit_code == 3


def test_terminal_runs_are_immutable(ledger):
    run = ledger.start(ledger.create(1, "scheduler_git").id)
    ledger.finish(run.id, 0)

    with pytest.raises(InvalidStateTransition):
        ledger.finish(run.id, 1)
    with pytest.raises(InvalidStateTransition):
        ledger.start(run.id)
    with pytest.raises(InvalidStateTransition):
        ledger.append_output(run.id, stdout="late")


def test_unknown_run(ledger):
    with pytest.raises(NotFound):
        ledger.finish(12345, 0)
    with pytest.raises(NotFound):
        ledger.get(12345)


def test_duplicate_in_flight_run_is_rejected(ledger):
    ledger.create(7, "scheduler_github_gitlab")

    with pytest.raises(DuplicateInFlightJob):
        ledger.create(7, "scheduler_github_gitlab")

    # a different job kind or resource is independent
    ledger.create(7, "web_crawler")
    ledger.create(8, "scheduler_github_gitlab")


def test_new_run_allowed_after_terminal(ledger):
    run = ledger.create(7, "scheduler_git")
    ledger.finish(run.id, 1)

    second = ledger.create(7, "scheduler_git")

    assert second.id != run.id


def test_concurrent_create_yields_single_in_flight_run(ledger, db_manager):
    barrier = threading.Barrier(8)
    outcomes = []

    def worker():
        barrier.wait()
        try:
            ledger.create(42, "scheduler_git")
            outcomes.append("created")
        except DuplicateInFlightJob:
            outcomes.append("duplicate")

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert outcomes.count("created") == 1
    assert outcomes.count("duplicate") == 7
    with db_manager.get_session() as session:
        assert session.query(JobRun).filter(JobRun.resource_id == 42).count() == 1


def test_storage_index_rejects_second_in_flight_row(db_manager):
    from sqlalchemy.exc import IntegrityError

    with db_manager.get_session() as session:
        session.add(JobRun(resource_id=1, job_kind="scheduler_git", state="running"))
        session.commit()
        session.add(JobRun(resource_id=1, job_kind="scheduler_git", state="pending"))
        with pytest.raises(IntegrityError):
            session.commit()


def test_stats_counts_pending_and_running_together(ledger):
    ok = ledger.start(ledger.create(1, "scheduler_git").id)
    ledger.finish(ok.id, 0)
    bad = ledger.start(ledger.create(2, "scheduler_git").id)
    ledger.finish(bad.id, 1)
    ledger.start(ledger.create(3, "scheduler_git").id)
    ledger.create(4, "web_crawler")

    assert ledger.stats() == {"success": 1, "failed": 1, "pending": 2}
    assert ledger.stats(["web_crawler"]) == {"success": 0, "failed": 0, "pending": 1}


def test_fail_orphaned_runs_marks_in_flight_failed(ledger):
    running = ledger.start(ledger.create(1, "scheduler_git").id)
    pending = ledger.create(2, "scheduler_git")
    done = ledger.start(ledger.create(3, "scheduler_git").id)
    ledger.finish(done.id, 0)

    assert ledger.fail_orphaned_runs() == 2

    for run_id in (running.id, pending.id):
        run = ledger.get(run_id)
        assert run.state == "failed"
        assert "cancelled" in run.stderr
    assert ledger.get(done.id).state == "succeeded"
    assert ledger.in_flight_resource_ids() == set()


def test_latest_runs_picks_most_recent_terminal_run(ledger):
    first = ledger.start(ledger.create(1, "scheduler_git").id)
    ledger.finish(first.id, 1)
    second = ledger.start(ledger.create(1, "scheduler_git").id)
    ledger.finish(second.id, 0)
    ledger.create(1, "scheduler_git")

    latest = ledger.latest_runs([1, 2])

    assert list(latest) == [1]
    assert latest[1].id == second.id


def test_logs_are_capped_with_marker(ledger):
    run = ledger.start(ledger.create(1, "scheduler_git").id)

    run = ledger.finish(run.id, 0, stdout="x" * 3000 + "tail")

    assert run.stdout.startswith("[... truncated 1980 bytes ...]")
    assert run.stdout.endswith("tail")


def test_cap_log_short_text_is_untouched():
    assert cap_log("hello", 1024) == "hello"
    assert cap_log(None) == ""


def test_append_output_accumulates_until_finish(ledger):
    run = ledger.create(1, "scheduler_git")
    with pytest.raises(InvalidStateTransition):
        ledger.append_output(run.id, stdout="too early")

    ledger.start(run.id)
    ledger.append_output(run.id, stdout="cloning\n")
    ledger.append_output(run.id, stdout="indexing\n", stderr="slow\n")
    assert ledger.get(run.id).stdout == "cloning\nindexing\n"

    run = ledger.finish(run.id, 0, stdout="done\n")

    assert run.stdout == "cloning\nindexing\ndone\n"
    assert run.stderr == "slow\n"


def test_appended_output_is_capped_with_marker(ledger):
    run = ledger.start(ledger.create(1, "scheduler_git").id)

    for _ in range(3):
        ledger.append_output(run.id, stdout="x" * 1000)
    run = ledger.append_output(run.id, stdout="tail")

    assert run.stdout.startswith("[... truncated")
    assert run.stdout.endswith("tail")
    assert len(run.stdout.split("\n", 1)[1]) == 1024
