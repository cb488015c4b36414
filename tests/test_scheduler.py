import asyncio
import logging
import random

import pytest

from conftest import BlockingAnalyzer, ScriptedAnalyzer, make_request
from stardust.cache.artifacts import ArtifactCache
from stardust.executor.errors import SchedulerInvariantError
from stardust.executor.scheduler import Scheduler
from stardust.executor.schemas import OperationState, PhaseType
from stardust.executor.snapshot_store import SnapshotStore


def _scheduler(queue, notifier, cache, analyzer, strict=True) -> Scheduler:
    scheduler = Scheduler(queue, notifier, ArtifactCache(cache), analyzer, strict=strict)
    if isinstance(analyzer, ScriptedAnalyzer):
        analyzer.running_counter = lambda: sum(
            1 for op in queue.operations if op.state == OperationState.RUNNING
        )
    return scheduler


def test_queued_operations_start_in_submission_order(queue, notifier, cache):
    analyzer = ScriptedAnalyzer()
    scheduler = _scheduler(queue, notifier, cache, analyzer)

    async def scenario():
        for query in ("a", "b", "c"):
            queue.submit(make_request(query), "c")
        scheduler.start_next()
        await scheduler.wait_idle()

    asyncio.run(scenario())

    assert analyzer.started == ["a", "b", "c"]
    assert all(op.state == OperationState.DONE for op in queue.operations)
    assert not scheduler.is_running


def test_at_most_one_operation_runs_at_a_time(queue, notifier, cache):
    analyzer = ScriptedAnalyzer()
    scheduler = _scheduler(queue, notifier, cache, analyzer)
    queue.max_active = 1000
    rng = random.Random(7)

    async def scenario():
        for i in range(30):
            queue.submit(make_request(f"q{i}"), "c")
            if not scheduler.is_running:
                scheduler.start_next()
            for _ in range(rng.randint(0, 3)):
                await asyncio.sleep(0)
            running = [op for op in queue.operations if op.state == OperationState.RUNNING]
            assert len(running) <= 1
        await scheduler.wait_idle()

    asyncio.run(scenario())

    assert len(analyzer.started) == 30
    assert analyzer.started == [f"q{i}" for i in range(30)]
    assert set(analyzer.observed_running) == {1}


def test_start_next_while_running_is_an_invariant_violation(queue, notifier, cache):
    analyzer = BlockingAnalyzer()
    scheduler = _scheduler(queue, notifier, cache, analyzer, strict=True)

    async def scenario():
        queue.submit(make_request("a"), "c")
        queue.submit(make_request("b"), "c")
        scheduler.start_next()
        with pytest.raises(SchedulerInvariantError):
            scheduler.start_next()
        analyzer.release()
        await scheduler.wait_idle()

    asyncio.run(scenario())
    assert analyzer.started == ["a", "b"]


def test_start_next_while_running_is_logged_in_production(queue, notifier, cache, caplog):
    analyzer = BlockingAnalyzer()
    scheduler = _scheduler(queue, notifier, cache, analyzer, strict=False)

    async def scenario():
        queue.submit(make_request("a"), "c")
        first = scheduler.start_next()
        second = scheduler.start_next()
        analyzer.release()
        await scheduler.wait_idle()
        return first, second

    with caplog.at_level(logging.ERROR):
        first, second = asyncio.run(scenario())

    assert first is not None
    assert second is None
    assert "already running" in caplog.text


def test_idle_scheduler_with_empty_queue_stays_idle(queue, notifier, cache):
    scheduler = _scheduler(queue, notifier, cache, ScriptedAnalyzer())

    async def scenario():
        return scheduler.start_next()

    assert asyncio.run(scenario()) is None
    assert not scheduler.is_running


def test_running_state_and_status_are_broadcast(queue, notifier, cache, client):
    analyzer = BlockingAnalyzer()
    scheduler = _scheduler(queue, notifier, cache, analyzer)

    async def scenario():
        operation = queue.submit(make_request("a"), "c")
        scheduler.start_next()
        assert operation.state == OperationState.RUNNING
        assert operation.progress.started_at > 0
        assert client.last("status")["isRunning"] is True
        assert client.last("op-update")["progress"]["state"] == "running"
        analyzer.release()
        await scheduler.wait_idle()
        return operation

    operation = asyncio.run(scenario())

    assert operation.state == OperationState.DONE
    assert operation.progress.ended_at >= operation.progress.started_at
    assert client.last("status")["isRunning"] is False
    assert client.last("op-update")["progress"]["state"] == "done"


def test_failed_analysis_is_recorded_and_next_runs(queue, notifier, cache):
    async def explode(hooks):
        raise RuntimeError("GitHub rate limit")

    analyzer = ScriptedAnalyzer({"bad": explode})
    scheduler = _scheduler(queue, notifier, cache, analyzer)

    async def scenario():
        bad = queue.submit(make_request("bad"), "c")
        good = queue.submit(make_request("good"), "c")
        scheduler.start_next()
        await scheduler.wait_idle()
        return bad, good

    bad, good = asyncio.run(scenario())

    assert bad.state == OperationState.DONE
    assert bad.progress.error == "GitHub rate limit"
    assert good.state == OperationState.DONE
    assert good.progress.error is None
    assert analyzer.started == ["bad", "good"]


def test_empty_table_sets_error_without_raising(queue, notifier, cache):
    async def empty_stats(hooks):
        await hooks.on_output(PhaseType.STATS, [])
        hooks.on_progress({"fraction": 1.0})

    analyzer = ScriptedAnalyzer({"empty": empty_stats})
    scheduler = _scheduler(queue, notifier, cache, analyzer)

    async def scenario():
        empty = queue.submit(make_request("empty"), "c")
        after = queue.submit(make_request("after"), "c")
        scheduler.start_next()
        await scheduler.wait_idle()
        return empty, after

    empty, after = asyncio.run(scenario())

    assert empty.state == OperationState.DONE
    assert empty.progress.error == "Insufficient data or other data issue (6)"
    assert empty.progress.fraction == 1.0
    assert empty.outputs == []
    assert after.state == OperationState.DONE


def test_non_sequence_table_payload_sets_error(queue, notifier, cache):
    async def bad_stats(hooks):
        await hooks.on_output(PhaseType.STATS, {"rows": 3})

    scheduler = _scheduler(queue, notifier, cache, ScriptedAnalyzer({"x": bad_stats}))

    async def scenario():
        operation = queue.submit(make_request("x"), "c")
        scheduler.start_next()
        await scheduler.wait_idle()
        return operation

    operation = asyncio.run(scenario())
    assert operation.progress.error.startswith("Insufficient data")


def test_outputs_are_stored_per_phase_policy(queue, notifier, cache):
    rows = [{"repo": "a/b", "stars": 3}, {"repo": "c/d", "stars": 4}]

    async def produce(hooks):
        await hooks.on_output(PhaseType.RESOLVE_INPUT, {"ignored": True})
        await hooks.on_output(PhaseType.TOPICS_STATS, {"nlp": 2})
        await hooks.on_output(PhaseType.STATS, rows)
        await hooks.on_output(PhaseType.STATS, rows[:1])

    scheduler = _scheduler(queue, notifier, cache, ScriptedAnalyzer({"x": produce}))

    async def scenario():
        operation = queue.submit(make_request("x"), "c")
        scheduler.start_next()
        await scheduler.wait_idle()
        stored = {
            "topics": await cache.get_json(f"topics:{operation.uid}"),
            "table": await cache.get_json(f"csv:{operation.uid}.0"),
        }
        return operation, stored

    operation, stored = asyncio.run(scenario())

    assert [ref.cache_key for ref in operation.outputs] == [
        f"csv:{operation.uid}.0",
        f"csv:{operation.uid}.1",
    ]
    assert [ref.row_count for ref in operation.outputs] == [2, 1]
    assert operation.outputs[0].col_count == 2
    assert stored["topics"] == {"nlp": 2}
    assert stored["table"].startswith("repo,stars\n")
    assert operation.progress.error is None


def test_progress_funnel_and_filter_hooks(queue, notifier, cache, client):
    async def report(hooks):
        hooks.on_progress({"phaseCount": 6, "phase_index": 2, "fraction": 1.7})
        hooks.on_progress({"state": "done", "startedAt": 1})
        hooks.on_funnel({"size": 40, "stage": "skimmed", "source": "stars"})
        hooks.on_filters(["doc-only", "non-org"])

    scheduler = _scheduler(queue, notifier, cache, ScriptedAnalyzer({"x": report}))

    async def scenario():
        operation = queue.submit(make_request("x"), "c")
        scheduler.start_next()
        started_at = operation.progress.started_at
        await scheduler.wait_idle()
        return operation, started_at

    operation, started_at = asyncio.run(scenario())

    assert operation.progress.phase_count == 6
    assert operation.progress.phase_index == 2
    assert operation.progress.fraction == 1.0
    assert operation.progress.started_at == started_at
    assert [(f.size, f.stage) for f in operation.funnel] == [(40, "skimmed")]
    assert operation.filters == ["doc-only", "non-org"]
    updates = client.payloads("op-update")
    assert any(update["filters"] == ["doc-only", "non-org"] for update in updates)


def test_hooks_are_closed_after_completion(queue, notifier, cache):
    leaked = []

    async def leak(hooks):
        leaked.append(hooks)

    scheduler = _scheduler(queue, notifier, cache, ScriptedAnalyzer({"x": leak}))

    async def scenario():
        operation = queue.submit(make_request("x"), "c")
        scheduler.start_next()
        await scheduler.wait_idle()
        leaked[0].on_filters(["late"])
        await leaked[0].on_output(PhaseType.STATS, [{"a": 1}])
        return operation

    operation = asyncio.run(scenario())
    assert operation.filters == []
    assert operation.outputs == []


def test_completion_persists_snapshot(queue, notifier, cache):
    scheduler = _scheduler(queue, notifier, cache, ScriptedAnalyzer())

    async def scenario():
        queue.submit(make_request("a"), "c")
        scheduler.start_next()
        await scheduler.wait_idle()
        await queue.snapshots.flush()
        return await SnapshotStore(cache).restore()

    restored = asyncio.run(scenario())
    assert [op.state for op in restored] == [OperationState.DONE]


def test_stop_leaves_operation_to_be_requeued(queue, notifier, cache):
    analyzer = BlockingAnalyzer()
    scheduler = _scheduler(queue, notifier, cache, analyzer)

    async def scenario():
        operation = queue.submit(make_request("a"), "c")
        scheduler.start_next()
        await asyncio.sleep(0)
        queue.persist()
        await scheduler.stop()
        await queue.snapshots.flush()
        return operation, await SnapshotStore(cache).restore()

    operation, restored = asyncio.run(scenario())

    assert not scheduler.is_running
    assert operation.state == OperationState.RUNNING
    assert restored[0].state == OperationState.QUEUED
    assert restored[0].progress.started_at == 0


def test_non_string_error_is_stored_as_text(queue, notifier, cache):
    async def forbidden(hooks):
        hooks.on_progress({"error": {"code": 403}})

    async def cleared(hooks):
        hooks.on_progress({"error": "transient"})
        hooks.on_progress({"error": None})

    analyzer = ScriptedAnalyzer({"forbidden": forbidden, "cleared": cleared})
    scheduler = _scheduler(queue, notifier, cache, analyzer)

    async def scenario():
        failed = queue.submit(make_request("forbidden"), "c")
        ok = queue.submit(make_request("cleared"), "c")
        scheduler.start_next()
        await scheduler.wait_idle()
        await queue.snapshots.flush()
        return failed, ok, await SnapshotStore(cache).restore()

    failed, ok, restored = asyncio.run(scenario())

    assert failed.progress.error == "{'code': 403}"
    assert ok.progress.error is None
    assert len(restored) == 2
    assert {op.uid: op.progress.error for op in restored} == {
        failed.uid: "{'code': 403}",
        ok.uid: None,
    }
