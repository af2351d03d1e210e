"""Tests for the run lifecycle managed by the execution engine."""

import asyncio
import gc

import pytest

from pipeline_engine.core.dispatcher import InputHandler, build_default_dispatcher
from pipeline_engine.core.exceptions import (
    CycleDetectedError, ExecutionEngineError, InvalidInputError, ProviderError, RunNotFoundError,
    StorageError, ValidationError, WorkflowNotFoundError
)
from pipeline_engine.core.execution_engine import ExecutionEngine
from pipeline_engine.core.logging import clear_logging_context, get_logging_context, set_logging_context
from pipeline_engine.core.scheduler import WorkflowScheduler
from pipeline_engine.models.core import ExecutionRequest, NodeStatus, RunOutcome

from conftest import Hang, ScriptedServiceClient, linear_workflow, make_workflow


def engine_for(store, delivery, settings, client):
    dispatcher = build_default_dispatcher({"*": client}, store=store, delivery=delivery)
    return ExecutionEngine(store, dispatcher, settings)


async def wait_until(predicate, timeout=2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


class TestStartingRuns:

    @pytest.mark.asyncio
    async def test_run_persists_final_record(self, store, delivery, fast_settings, service_client):
        store.save(linear_workflow())
        engine = engine_for(store, delivery, fast_settings, service_client)

        record = await engine.run(ExecutionRequest(workflow_id="wf-1"))

        assert record.outcome == RunOutcome.SUCCEEDED
        assert record.finished_at is not None
        persisted = store.get_run(record.run_id)
        assert persisted.outcome == RunOutcome.SUCCEEDED
        assert len(persisted.events) == len(record.events)
        assert await engine.get_run(record.run_id) == record
        assert not engine.is_active(record.run_id)

    @pytest.mark.asyncio
    async def test_invalid_workflow_rejected_without_run(self, store, delivery, fast_settings, service_client):
        store.save(make_workflow(
            [("I", "input_text"), ("U", "transform_upscale"), ("O", "output_save")],
            [("I", "U"), ("U", "O")],
        ))
        engine = engine_for(store, delivery, fast_settings, service_client)

        with pytest.raises(ValidationError):
            await engine.start_run(ExecutionRequest(workflow_id="wf-1"))

        assert engine.active_runs() == []
        assert store.list_runs("wf-1") == []
        assert service_client.calls == []

    @pytest.mark.asyncio
    async def test_cyclic_workflow_rejected(self, store, delivery, fast_settings, service_client):
        store.save(make_workflow(
            [("I", "input_text"), ("A", "process_ai_image"), ("B", "transform_upscale"), ("O", "output_save")],
            [("I", "A"), ("A", "B"), ("B", "A"), ("B", "O")],
        ))
        engine = engine_for(store, delivery, fast_settings, service_client)

        with pytest.raises(CycleDetectedError):
            await engine.start_run(ExecutionRequest(workflow_id="wf-1"))

    @pytest.mark.asyncio
    async def test_unknown_workflow(self, store, delivery, fast_settings, service_client):
        engine = engine_for(store, delivery, fast_settings, service_client)

        with pytest.raises(WorkflowNotFoundError):
            await engine.start_run(ExecutionRequest(workflow_id="missing"))

    @pytest.mark.asyncio
    async def test_request_overrides_retry_limit(self, store, delivery, fast_settings):
        client = ScriptedServiceClient({"P": [ProviderError("down"), ProviderError("down")]})
        store.save(linear_workflow())
        engine = engine_for(store, delivery, fast_settings, client)

        record = await engine.run(ExecutionRequest(workflow_id="wf-1", max_retries=1))

        assert record.nodes["P"].status == NodeStatus.FAILED
        assert record.nodes["P"].attempts == 1
        assert record.outcome == RunOutcome.FAILED

    @pytest.mark.asyncio
    async def test_concurrent_runs_are_isolated(self, store, delivery, fast_settings):
        client = ScriptedServiceClient(delay=0.01)
        store.save(linear_workflow())
        engine = engine_for(store, delivery, fast_settings, client)

        first = await engine.start_run(ExecutionRequest(workflow_id="wf-1"))
        second = await engine.start_run(ExecutionRequest(workflow_id="wf-1"))
        records = await asyncio.gather(engine.wait(first), engine.wait(second))

        assert first != second
        assert [record.outcome for record in records] == [RunOutcome.SUCCEEDED] * 2
        assert client.call_count("P") == 2
        assert {run.run_id for run in await engine.list_runs("wf-1")} == {first, second}


class TestObservingRuns:

    @pytest.mark.asyncio
    async def test_live_snapshot_while_running(self, store, delivery, fast_settings):
        client = ScriptedServiceClient({"P": [Hang(30.0)]})
        store.save(linear_workflow())
        engine = engine_for(store, delivery, fast_settings, client)

        run_id = await engine.start_run(ExecutionRequest(workflow_id="wf-1"))
        await wait_until(lambda: "P" in client.calls)

        snapshot = await engine.get_run(run_id)
        assert snapshot.outcome is None
        assert snapshot.nodes["I"].status == NodeStatus.SUCCEEDED
        assert snapshot.nodes["P"].status == NodeStatus.RUNNING
        assert engine.active_runs() == [run_id]
        assert [run.run_id for run in await engine.list_runs("wf-1")] == [run_id]

        assert engine.cancel(run_id) is True
        record = await engine.wait(run_id)
        assert record.outcome == RunOutcome.FAILED

    @pytest.mark.asyncio
    async def test_unknown_run(self, store, delivery, fast_settings, service_client):
        engine = engine_for(store, delivery, fast_settings, service_client)

        with pytest.raises(RunNotFoundError):
            await engine.get_run("ghost")

    @pytest.mark.asyncio
    async def test_finished_runs_served_from_store_after_eviction(self, store, delivery, fast_settings,
                                                                  service_client):
        store.save(linear_workflow())
        dispatcher = build_default_dispatcher({"*": service_client}, store=store, delivery=delivery)
        engine = ExecutionEngine(store, dispatcher, fast_settings, history_size=1)

        first = await engine.run(ExecutionRequest(workflow_id="wf-1"))
        await engine.run(ExecutionRequest(workflow_id="wf-1"))

        reloaded = await engine.get_run(first.run_id)
        assert reloaded.run_id == first.run_id
        assert reloaded.outcome == RunOutcome.SUCCEEDED


class TestCancellingRuns:

    @pytest.mark.asyncio
    async def test_cancel_in_flight_run(self, store, delivery, fast_settings):
        client = ScriptedServiceClient({"P": [Hang(30.0)]})
        store.save(linear_workflow())
        engine = engine_for(store, delivery, fast_settings, client)

        run_id = await engine.start_run(ExecutionRequest(workflow_id="wf-1"))
        await wait_until(lambda: "P" in client.calls)

        assert engine.cancel(run_id) is True
        assert engine.cancel(run_id) is True
        record = await asyncio.wait_for(engine.wait(run_id), timeout=2.0)

        assert record.nodes["P"].status == NodeStatus.FAILED
        assert record.nodes["P"].error.error_code == "RunCancelledError"
        assert record.nodes["O"].status == NodeStatus.SKIPPED
        assert store.get_run(run_id).outcome == RunOutcome.FAILED
        assert engine.cancel(run_id) is False

    @pytest.mark.asyncio
    async def test_cancel_unknown_run(self, store, delivery, fast_settings, service_client):
        engine = engine_for(store, delivery, fast_settings, service_client)
        assert engine.cancel("ghost") is False

    @pytest.mark.asyncio
    async def test_shutdown_stops_active_runs(self, store, delivery, fast_settings):
        client = ScriptedServiceClient({"P": [Hang(30.0)]})
        store.save(linear_workflow())
        engine = engine_for(store, delivery, fast_settings, client)

        run_id = await engine.start_run(ExecutionRequest(workflow_id="wf-1"))
        await wait_until(lambda: "P" in client.calls)
        await asyncio.wait_for(engine.shutdown(), timeout=2.0)

        assert engine.active_runs() == []
        assert store.get_run(run_id).nodes["P"].status == NodeStatus.FAILED


class TestResumingRuns:

    @pytest.mark.asyncio
    async def test_resume_failed_run(self, store, delivery, fast_settings):
        client = ScriptedServiceClient({"P": [InvalidInputError("rejected")]})
        store.save(linear_workflow())
        engine = engine_for(store, delivery, fast_settings, client)

        failed = await engine.run(ExecutionRequest(workflow_id="wf-1"))
        assert failed.outcome == RunOutcome.FAILED

        resumed_id = await engine.resume(failed.run_id)
        resumed = await engine.wait(resumed_id)

        assert resumed_id != failed.run_id
        assert resumed.outcome == RunOutcome.SUCCEEDED
        assert resumed.nodes["I"].attempts == failed.nodes["I"].attempts
        assert client.call_count("P") == 2

    @pytest.mark.asyncio
    async def test_resume_rejects_other_workflow(self, store, delivery, fast_settings, service_client):
        store.save(linear_workflow())
        store.save(linear_workflow("wf-2"))
        engine = engine_for(store, delivery, fast_settings, service_client)
        record = await engine.run(ExecutionRequest(workflow_id="wf-1"))

        with pytest.raises(ExecutionEngineError):
            await engine.resume(record.run_id, ExecutionRequest(workflow_id="wf-2"))

    @pytest.mark.asyncio
    async def test_resume_rejects_active_run(self, store, delivery, fast_settings):
        client = ScriptedServiceClient({"P": [Hang(30.0)]})
        store.save(linear_workflow())
        engine = engine_for(store, delivery, fast_settings, client)
        run_id = await engine.start_run(ExecutionRequest(workflow_id="wf-1"))

        with pytest.raises(ExecutionEngineError):
            await engine.resume(run_id)

        engine.cancel(run_id)
        await engine.wait(run_id)


class TestPersistenceFailures:

    @pytest.mark.asyncio
    async def test_storage_failure_keeps_record_in_memory(self, store, delivery, fast_settings, service_client,
                                                          monkeypatch):
        store.save(linear_workflow())
        engine = engine_for(store, delivery, fast_settings, service_client)

        def broken(workflow_id, record):
            raise StorageError("disk full", operation="save_run_result")

        monkeypatch.setattr(store, "save_run_result", broken)
        record = await engine.run(ExecutionRequest(workflow_id="wf-1"))

        assert record.outcome == RunOutcome.SUCCEEDED
        assert (await engine.get_run(record.run_id)).run_id == record.run_id

    @pytest.mark.asyncio
    async def test_aborted_background_run_is_collected(self, store, delivery, fast_settings, service_client,
                                                       monkeypatch):
        store.save(linear_workflow())
        engine = engine_for(store, delivery, fast_settings, service_client)
        unhandled = []
        loop = asyncio.get_running_loop()
        loop.set_exception_handler(lambda loop, context: unhandled.append(context))

        async def broken(self, validated, context, cancel):
            raise RuntimeError("scheduler crashed")

        monkeypatch.setattr(WorkflowScheduler, "execute", broken)
        try:
            run_id = await engine.start_run(ExecutionRequest(workflow_id="wf-1"))
            await wait_until(lambda: not engine.is_active(run_id))
            await asyncio.sleep(0.01)
            gc.collect()
            await asyncio.sleep(0)
        finally:
            loop.set_exception_handler(None)

        assert unhandled == []
        assert store.get_run(run_id).run_id == run_id


class TestRunLogging:

    @pytest.mark.asyncio
    async def test_background_run_drops_request_context(self, store, delivery, fast_settings, service_client):
        seen = []

        class RecordingInput(InputHandler):
            async def execute(self, node, inputs, cancel, scope):
                seen.append(get_logging_context())
                return await super().execute(node, inputs, cancel, scope)

        store.save(linear_workflow())
        engine = engine_for(store, delivery, fast_settings, service_client)
        engine.dispatcher.register("input_text", RecordingInput())

        token = set_logging_context(request_id="req-1", method="POST", path="/api/v1/runs")
        try:
            run_id = await engine.start_run(ExecutionRequest(workflow_id="wf-1"))
        finally:
            clear_logging_context(token)
        await engine.wait(run_id)

        assert seen == [{"run_id": run_id, "workflow_id": "wf-1", "node_id": "I"}]
