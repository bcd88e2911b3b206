from __future__ import annotations

import asyncio

import pytest
from structlog.testing import capture_logs

from clusterdeck.core.errors import ConflictError, InconsistencyError, UpstreamError
from clusterdeck.core.saga import Saga, SagaState


def _recorder(journal: list[str], label: str, result=None, error: Exception | None = None):
    async def step(*_args):
        journal.append(label)
        if error is not None:
            raise error
        return result

    return step


async def test_all_steps_commit_and_return_results():
    journal: list[str] = []
    saga = Saga("demo")
    saga.add("a", _recorder(journal, "a", result=1), _recorder(journal, "undo a"))
    saga.add("b", _recorder(journal, "b", result=2), _recorder(journal, "undo b"))

    assert await saga.run() == [1, 2]
    assert journal == ["a", "b"]
    assert saga.state is SagaState.COMMITTED


async def test_failure_compensates_completed_steps_in_reverse():
    journal: list[str] = []
    saga = Saga("demo", resource="thing")
    saga.add("a", _recorder(journal, "a"), _recorder(journal, "undo a"))
    saga.add("b", _recorder(journal, "b"), _recorder(journal, "undo b"))
    saga.add("c", _recorder(journal, "c", error=ConflictError("taken")), _recorder(journal, "undo c"))

    with pytest.raises(ConflictError):
        await saga.run()

    assert journal == ["a", "b", "c", "undo b", "undo a"]
    assert saga.state is SagaState.COMPENSATED
    assert saga.failed_step == "c"


async def test_compensation_receives_its_action_result():
    received: list[object] = []

    async def undo(value):
        received.append(value)

    saga = Saga("demo")
    saga.add("a", _recorder([], "a", result="old-value"), undo)
    saga.add("b", _recorder([], "b", error=RuntimeError("boom")))

    with pytest.raises(UpstreamError):
        await saga.run()
    assert received == ["old-value"]


async def test_unexpected_error_becomes_upstream_error():
    saga = Saga("demo", resource="thing")
    saga.add("a", _recorder([], "a", error=RuntimeError("socket closed")))

    with pytest.raises(UpstreamError) as exc_info:
        await saga.run()
    assert exc_info.value.details == {"step": "a", "resource": "thing"}
    assert isinstance(exc_info.value.__cause__, RuntimeError)


async def test_failed_compensation_raises_inconsistency_and_logs_orphans():
    journal: list[str] = []
    saga = Saga("demo", resource="thing")
    saga.add("a", _recorder(journal, "a"), _recorder(journal, "undo a"), ids=("id-a",))
    saga.add("b", _recorder(journal, "b"), _recorder(journal, "undo b", error=RuntimeError("gone")), ids=("id-b",))
    saga.add("c", _recorder(journal, "c", error=RuntimeError("boom")))

    with capture_logs() as logs:
        with pytest.raises(InconsistencyError) as exc_info:
            await saga.run()

    # compensation keeps going after one of them fails
    assert journal == ["a", "b", "c", "undo b", "undo a"]
    assert saga.state is SagaState.PARTIALLY_COMPENSATED
    assert exc_info.value.orphaned_ids == ["id-b"]
    assert "id-b" not in exc_info.value.message
    assert exc_info.value.details == {"flow": "demo"}

    events = [entry["event"] for entry in logs]
    assert "saga.compensation_failed" in events
    manual = next(entry for entry in logs if entry["event"] == "saga.manual_intervention_required")
    assert manual["orphaned_ids"] == ["id-b"]


async def test_steps_without_compensation_are_skipped():
    journal: list[str] = []
    saga = Saga("demo")
    saga.add("a", _recorder(journal, "a"), _recorder(journal, "undo a"))
    saga.add("b", _recorder(journal, "b"))
    saga.add("c", _recorder(journal, "c", error=ConflictError("taken")))

    with pytest.raises(ConflictError):
        await saga.run()
    assert journal == ["a", "b", "c", "undo a"]


async def test_rollback_finishes_when_caller_is_cancelled():
    journal: list[str] = []
    compensation_started = asyncio.Event()
    release = asyncio.Event()

    async def slow_undo(_):
        compensation_started.set()
        await release.wait()
        journal.append("undo a")

    saga = Saga("demo")
    saga.add("a", _recorder(journal, "a"), slow_undo)
    saga.add("b", _recorder(journal, "b", error=ConflictError("taken")))

    task = asyncio.create_task(saga.run())
    await compensation_started.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    release.set()
    for _ in range(10):
        if journal[-1:] == ["undo a"]:
            break
        await asyncio.sleep(0)
    assert journal == ["a", "b", "undo a"]
