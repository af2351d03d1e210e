"""Tests for the workflow scheduler: ordering, retries, failure isolation, cancellation."""

import asyncio

import pytest

from pipeline_engine.core.dispatcher import InputHandler, build_default_dispatcher
from pipeline_engine.core.exceptions import InvalidInputError, ProviderError, RateLimitedError
from pipeline_engine.core.scheduler import ExecutionSettings, WorkflowScheduler
from pipeline_engine.core.validator import validate_workflow
from pipeline_engine.models.core import EventType, ExecutionRequest, NodeStatus, RunOutcome

from conftest import Hang, ScriptedServiceClient, linear_workflow, make_workflow


def node_starts(context):
    return [event.node_id for event in context.events if event.event_type == EventType.NODE_START]


def events_of(context, event_type):
    return [event for event in context.events if event.event_type == event_type]


class TestExecutionSettings:

    def test_request_overrides(self):
        settings = ExecutionSettings().with_request(ExecutionRequest(
            workflow_id="wf", concurrency_limit=2, per_node_timeout_ms=1500, max_retries=5
        ))

        assert settings.concurrency_limit == 2
        assert settings.node_timeout == 1.5
        assert settings.max_attempts == 5

    def test_no_overrides_keeps_defaults(self):
        defaults = ExecutionSettings()
        assert defaults.with_request(ExecutionRequest(workflow_id="wf")) is defaults
        assert (defaults.concurrency_limit, defaults.node_timeout, defaults.max_attempts) == (4, 120.0, 3)

    def test_invalid_limits_rejected(self):
        with pytest.raises(ValueError):
            ExecutionSettings(concurrency_limit=0)
        with pytest.raises(ValueError):
            ExecutionSettings(node_timeout=0)


class TestLinearExecution:

    @pytest.mark.asyncio
    async def test_successful_run(self, dispatcher, fast_settings, service_client, store):
        store.save(linear_workflow())
        scheduler = WorkflowScheduler(dispatcher, fast_settings)

        context = await scheduler.run(validate_workflow(linear_workflow()))

        assert all(context.status(node_id) == NodeStatus.SUCCEEDED for node_id in ("I", "P", "O"))
        assert context.outcome() == RunOutcome.SUCCEEDED
        assert service_client.calls == ["P"]
        assert context.output("P").metadata["inputs"] == ["I"]
        assert node_starts(context) == ["I", "P", "O"]
        assert context.events[0].event_type == EventType.WORKFLOW_START
        assert context.events[-1].event_type == EventType.WORKFLOW_COMPLETE
        assert context.finished_at is not None

        saved = store.list_artifacts(context.run_id)
        assert [artifact.uri for artifact in saved] == ["https://cdn.example.com/P.png"]

    @pytest.mark.asyncio
    async def test_snapshot_of_finished_run(self, dispatcher, fast_settings, store):
        store.save(linear_workflow())
        context = await WorkflowScheduler(dispatcher, fast_settings).run(
            validate_workflow(linear_workflow()), run_id="run-42"
        )

        record = context.snapshot()

        assert record.run_id == "run-42"
        assert record.outcome == RunOutcome.SUCCEEDED
        assert record.nodes["P"].attempts == 1
        assert [event.sequence for event in record.events] == list(range(len(record.events)))


class TestRetries:

    @pytest.mark.asyncio
    async def test_transient_failures_retried_until_success(self, store, delivery, fast_settings):
        client = ScriptedServiceClient({"P": [ProviderError("boom"), ProviderError("boom again"), None]})
        dispatcher = build_default_dispatcher({"*": client}, store=store, delivery=delivery)
        store.save(linear_workflow())

        context = await WorkflowScheduler(dispatcher, fast_settings).run(validate_workflow(linear_workflow()))

        assert context.status("P") == NodeStatus.SUCCEEDED
        assert context.nodes["P"].attempts == 3
        assert context.nodes["P"].error is None
        assert context.status("O") == NodeStatus.SUCCEEDED
        assert node_starts(context).count("O") == 1
        assert len(events_of(context, EventType.NODE_RETRY)) == 2
        assert context.outcome() == RunOutcome.SUCCEEDED

    @pytest.mark.asyncio
    async def test_exhausted_retries_fail_node_and_skip_descendants(self, store, delivery, fast_settings):
        client = ScriptedServiceClient({"P": [ProviderError("down")] * 3})
        dispatcher = build_default_dispatcher({"*": client}, store=store, delivery=delivery)

        context = await WorkflowScheduler(dispatcher, fast_settings).run(validate_workflow(linear_workflow()))

        assert context.status("P") == NodeStatus.FAILED
        assert context.nodes["P"].attempts == 3
        assert context.nodes["P"].error.error_code == "ProviderError"
        assert context.nodes["P"].error.retryable
        assert context.status("O") == NodeStatus.SKIPPED
        assert context.nodes["O"].attempts == 0
        assert "O" not in node_starts(context)
        assert context.outcome() == RunOutcome.FAILED
        assert store.list_artifacts(context.run_id) == []

    @pytest.mark.asyncio
    async def test_invalid_input_not_retried(self, store, delivery, fast_settings):
        client = ScriptedServiceClient({"P": [InvalidInputError("prompt rejected")]})
        dispatcher = build_default_dispatcher({"*": client}, store=store, delivery=delivery)

        context = await WorkflowScheduler(dispatcher, fast_settings).run(validate_workflow(linear_workflow()))

        assert context.status("P") == NodeStatus.FAILED
        assert context.nodes["P"].attempts == 1
        assert client.call_count("P") == 1
        assert not context.nodes["P"].error.retryable

    @pytest.mark.asyncio
    async def test_timeout_is_retried(self, store, delivery):
        client = ScriptedServiceClient({"P": [Hang(5.0), None]})
        dispatcher = build_default_dispatcher({"*": client}, store=store, delivery=delivery)
        settings = ExecutionSettings(node_timeout=0.05, retry_base_delay=0.01, retry_max_delay=0.01, retry_jitter=False)
        store.save(linear_workflow())

        context = await WorkflowScheduler(dispatcher, settings).run(validate_workflow(linear_workflow()))

        assert context.status("P") == NodeStatus.SUCCEEDED
        assert context.nodes["P"].attempts == 2
        retries = events_of(context, EventType.NODE_RETRY)
        assert len(retries) == 1
        assert "ServiceTimeoutError" in retries[0].message

    @pytest.mark.asyncio
    async def test_rate_limit_retry_after_bounded_by_max_delay(self, store, delivery, fast_settings):
        client = ScriptedServiceClient({"P": [RateLimitedError("slow down", retry_after=60)]})
        dispatcher = build_default_dispatcher({"*": client}, store=store, delivery=delivery)
        store.save(linear_workflow())

        context = await asyncio.wait_for(
            WorkflowScheduler(dispatcher, fast_settings).run(validate_workflow(linear_workflow())),
            timeout=2.0
        )

        assert context.status("P") == NodeStatus.SUCCEEDED
        assert context.nodes["P"].attempts == 2

    @pytest.mark.asyncio
    async def test_single_attempt_limit(self, store, delivery):
        client = ScriptedServiceClient({"P": [ProviderError("down")]})
        dispatcher = build_default_dispatcher({"*": client}, store=store, delivery=delivery)

        context = await WorkflowScheduler(dispatcher, ExecutionSettings(max_attempts=1)).run(
            validate_workflow(linear_workflow())
        )

        assert context.status("P") == NodeStatus.FAILED
        assert context.nodes["P"].attempts == 1
        assert events_of(context, EventType.NODE_RETRY) == []


class TestFailureIsolation:

    @pytest.mark.asyncio
    async def test_fan_out_partial_outcome(self, store, delivery, fast_settings):
        workflow = make_workflow(
            [("I", "input_text"), ("P1", "process_ai_image"), ("P2", "process_ai_audio"),
             ("O1", "output_save"), ("O2", "output_download")],
            [("I", "P1"), ("I", "P2"), ("P1", "O1"), ("P2", "O2")],
        )
        client = ScriptedServiceClient({"P2": [InvalidInputError("no voice")]})
        dispatcher = build_default_dispatcher({"*": client}, store=store, delivery=delivery)
        store.save(workflow)

        context = await WorkflowScheduler(dispatcher, fast_settings).run(validate_workflow(workflow))

        assert context.status("O1") == NodeStatus.SUCCEEDED
        assert context.status("P2") == NodeStatus.FAILED
        assert context.status("O2") == NodeStatus.SKIPPED
        assert context.outcome() == RunOutcome.PARTIAL
        assert delivery.deliveries == []

    @pytest.mark.asyncio
    async def test_join_node_skipped_when_any_branch_fails(self, store, delivery, fast_settings):
        workflow = make_workflow(
            [("I", "input_text"), ("A", "process_ai_image"), ("B", "process_ai_audio"), ("V", "process_ai_video"),
             ("O", "output_save")],
            [("I", "A"), ("I", "B"), ("A", "V"), ("B", "V"), ("V", "O")],
        )
        client = ScriptedServiceClient({"B": [InvalidInputError("bad")]})
        dispatcher = build_default_dispatcher({"*": client}, store=store, delivery=delivery)

        context = await WorkflowScheduler(dispatcher, fast_settings).run(validate_workflow(workflow))

        assert context.status("A") == NodeStatus.SUCCEEDED
        assert context.status("V") == NodeStatus.SKIPPED
        assert context.status("O") == NodeStatus.SKIPPED
        assert client.call_count("V") == 0
        assert context.outcome() == RunOutcome.FAILED

    @pytest.mark.asyncio
    async def test_unregistered_type_fails_without_retry(self, store, delivery, fast_settings):
        workflow = make_workflow(
            [("I", "input_text"), ("P", "process_ai_video"), ("O", "output_save")],
            [("I", "P"), ("P", "O")],
        )
        client = ScriptedServiceClient()
        dispatcher = build_default_dispatcher({"process_ai_image": client}, store=store, delivery=delivery)

        context = await WorkflowScheduler(dispatcher, fast_settings).run(validate_workflow(workflow))

        assert context.status("P") == NodeStatus.FAILED
        assert context.nodes["P"].attempts == 1
        assert context.nodes["P"].error.error_code == "UnknownNodeTypeError"
        assert context.status("O") == NodeStatus.SKIPPED


class TestConcurrency:

    @pytest.mark.asyncio
    async def test_concurrency_limit_respected(self, store, delivery):
        branches = [f"P{index}" for index in range(6)]
        workflow = make_workflow(
            [("I", "input_text"), *[(node_id, "process_ai_image") for node_id in branches], ("O", "output_save")],
            [*[("I", node_id) for node_id in branches], *[(node_id, "O") for node_id in branches]],
        )
        client = ScriptedServiceClient(delay=0.02)
        dispatcher = build_default_dispatcher({"*": client}, store=store, delivery=delivery)
        store.save(workflow)

        context = await WorkflowScheduler(dispatcher, ExecutionSettings(concurrency_limit=2)).run(
            validate_workflow(workflow)
        )

        assert context.outcome() == RunOutcome.SUCCEEDED
        assert client.max_in_flight == 2
        assert sorted(context.inputs_for("O")) == branches
        assert len(store.list_artifacts(context.run_id)) == 6

    @pytest.mark.asyncio
    async def test_start_order_is_deterministic(self, dispatcher, store):
        workflow = make_workflow(
            [("O", "output_save"), ("B", "process_ai_image"), ("A", "process_ai_image"), ("I", "input_text")],
            [("I", "B"), ("I", "A"), ("A", "O"), ("B", "O")],
        )
        store.save(workflow)
        scheduler = WorkflowScheduler(dispatcher, ExecutionSettings(concurrency_limit=1))

        first = await scheduler.run(validate_workflow(workflow))
        second = await scheduler.run(validate_workflow(workflow))

        assert node_starts(first) == ["I", "A", "B", "O"]
        assert node_starts(second) == node_starts(first)


class TestCancellation:

    @pytest.mark.asyncio
    async def test_cancel_before_start_skips_every_node(self, store, delivery, fast_settings):
        cancel = asyncio.Event()
        cancel.set()
        client = ScriptedServiceClient()
        dispatcher = build_default_dispatcher({"*": client}, store=store, delivery=delivery)

        context = await WorkflowScheduler(dispatcher, fast_settings).run(
            validate_workflow(linear_workflow()), cancel=cancel
        )

        assert all(context.status(node_id) == NodeStatus.SKIPPED for node_id in ("I", "P", "O"))
        assert node_starts(context) == []
        assert client.calls == []
        assert len(events_of(context, EventType.WORKFLOW_CANCELLED)) == 1
        assert context.outcome() == RunOutcome.FAILED

    @pytest.mark.asyncio
    async def test_cancel_between_nodes_skips_remaining(self, store, delivery, fast_settings):
        class CancelAfterInput(InputHandler):
            async def execute(self, node, inputs, cancel, scope):
                artifact = await super().execute(node, inputs, cancel, scope)
                cancel.set()
                return artifact

        client = ScriptedServiceClient()
        dispatcher = build_default_dispatcher({"*": client}, store=store, delivery=delivery)
        dispatcher.register("input_text", CancelAfterInput())

        context = await WorkflowScheduler(dispatcher, fast_settings).run(
            validate_workflow(linear_workflow()), cancel=asyncio.Event()
        )

        assert context.status("I") == NodeStatus.SUCCEEDED
        assert context.status("P") == NodeStatus.SKIPPED
        assert context.status("O") == NodeStatus.SKIPPED
        assert node_starts(context) == ["I"]
        assert client.calls == []

    @pytest.mark.asyncio
    async def test_cancel_interrupts_in_flight_node(self, store, delivery, fast_settings):
        cancel = asyncio.Event()
        client = ScriptedServiceClient({"P": [Hang(30.0)]})
        dispatcher = build_default_dispatcher({"*": client}, store=store, delivery=delivery)
        scheduler = WorkflowScheduler(dispatcher, fast_settings)

        run = asyncio.create_task(scheduler.run(validate_workflow(linear_workflow()), cancel=cancel))
        while "P" not in client.calls:
            await asyncio.sleep(0.005)
        cancel.set()
        context = await asyncio.wait_for(run, timeout=2.0)

        assert context.status("P") == NodeStatus.FAILED
        assert context.nodes["P"].error.error_code == "RunCancelledError"
        assert context.output("P") is None
        assert context.status("O") == NodeStatus.SKIPPED

    @pytest.mark.asyncio
    async def test_cancel_during_backoff(self, store, delivery):
        cancel = asyncio.Event()
        client = ScriptedServiceClient({"P": [ProviderError("down")]})
        dispatcher = build_default_dispatcher({"*": client}, store=store, delivery=delivery)
        settings = ExecutionSettings(retry_base_delay=30.0, retry_max_delay=30.0, retry_jitter=False)

        run = asyncio.create_task(
            WorkflowScheduler(dispatcher, settings).run(validate_workflow(linear_workflow()), cancel=cancel)
        )
        while "P" not in client.calls:
            await asyncio.sleep(0.005)
        await asyncio.sleep(0.01)
        cancel.set()
        context = await asyncio.wait_for(run, timeout=2.0)

        assert context.status("P") == NodeStatus.FAILED
        assert context.nodes["P"].attempts == 1
        assert context.nodes["P"].error.error_code == "RunCancelledError"


class TestResume:

    @pytest.mark.asyncio
    async def test_resume_reuses_succeeded_nodes(self, store, delivery, fast_settings):
        client = ScriptedServiceClient({"P": [InvalidInputError("nope")]})
        dispatcher = build_default_dispatcher({"*": client}, store=store, delivery=delivery)
        scheduler = WorkflowScheduler(dispatcher, fast_settings)
        store.save(linear_workflow())

        first = await scheduler.run(validate_workflow(linear_workflow()))
        assert first.status("P") == NodeStatus.FAILED

        second = await scheduler.run(validate_workflow(linear_workflow()), resume_from=first.snapshot())

        assert second.status("I") == NodeStatus.SUCCEEDED
        assert "I" not in node_starts(second)
        assert second.status("P") == NodeStatus.SUCCEEDED
        assert second.outcome() == RunOutcome.SUCCEEDED
        assert client.call_count("P") == 2
