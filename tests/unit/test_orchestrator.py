"""
Unit tests for the execution orchestrator.

Covers traversal, branching, failure routing, cancellation, timeout,
retries and progress reporting.
"""
import asyncio
import pytest

from conftest import FailingBroadcaster
from engine.errors import ExecutionNotFoundError, ExecutionStateError
from engine.orchestrator import ExecutionOrchestrator, calculate_progress
from handlers.base import FunctionHandler
from models.execution import (
    ApprovalDecision,
    ExecutionStatus,
    ExecutionTrigger,
    TriggerType,
    WorkflowExecution,
)


def node_ids(execution):
    return [n.node_id for n in execution.node_executions]


class TestScenarios:
    """End-to-end behaviour of representative graphs."""

    @pytest.mark.asyncio
    async def test_linear_graph_completes(self, orchestrator, make_workflow):
        """start -> email -> end runs every node in order."""
        workflow = make_workflow(
            [("start", "start"), ("email", "email"), ("end", "end")],
            [("start", "email", None), ("email", "end", "always")],
        )

        execution = await orchestrator.execute_workflow(workflow, {}, actor_id="user-1")

        assert execution.status == ExecutionStatus.COMPLETED
        assert node_ids(execution) == ["start", "email", "end"]
        assert all(n.status == ExecutionStatus.COMPLETED for n in execution.node_executions)
        assert execution.output["email_sent"] is False
        assert execution.duration is not None
        assert execution.completed_at is not None

    @pytest.mark.asyncio
    async def test_branches_on_status_not_payload(self, orchestrator, make_workflow):
        """A condition node that evaluates false still completes, so onSuccess fires."""
        workflow = make_workflow(
            [("start", "start"), ("check", "condition"), ("end", "end"), ("notify_failure", "notification")],
            [
                ("start", "check", None),
                ("check", "end", "onSuccess"),
                ("check", "notify_failure", "onError"),
            ],
            configs={"check": {"condition": "false"}},
        )

        execution = await orchestrator.execute_workflow(workflow, {})

        check = execution.node_executions[1]
        assert check.status == ExecutionStatus.COMPLETED
        assert check.output == {"condition_result": False}
        assert node_ids(execution) == ["start", "check", "end"]

    @pytest.mark.asyncio
    async def test_custom_edge_reads_payload(self, orchestrator, make_workflow):
        """Custom expressions can branch on a node's output."""
        workflow = make_workflow(
            [("start", "start"), ("check", "condition"), ("yes", "end"), ("no", "report")],
            [
                ("start", "check", None),
                ("check", "yes", "custom:condition_result == true"),
                ("check", "no", "custom:not condition_result"),
            ],
            configs={"check": {"condition": "amount > 100"}},
        )

        execution = await orchestrator.execute_workflow(workflow, {"amount": 50})

        assert node_ids(execution) == ["start", "check", "no"]
        assert execution.output["report_generated"] is True

    @pytest.mark.asyncio
    async def test_oversized_custom_edge_is_not_followed(self, orchestrator, make_workflow):
        """A custom edge building an oversized value is skipped and the run completes."""
        workflow = make_workflow(
            [("start", "start"), ("end", "end")],
            [("start", "end", "custom:len('a' * 10000 * 10000 * 10000) > 0")],
        )

        execution = await orchestrator.execute_workflow(workflow, {})

        assert execution.status == ExecutionStatus.COMPLETED
        assert execution.error is None
        assert node_ids(execution) == ["start"]

    @pytest.mark.asyncio
    async def test_node_failure_does_not_fail_run(self, orchestrator, make_workflow, failing_handler):
        """A failed node with only an onSuccess edge ends its path; the run completes."""
        orchestrator.registry.register(failing_handler)
        workflow = make_workflow(
            [("start", "start"), ("x", "explode"), ("end", "end")],
            [("start", "x", None), ("x", "end", "onSuccess")],
        )

        execution = await orchestrator.execute_workflow(workflow, {})

        assert execution.status == ExecutionStatus.COMPLETED
        assert node_ids(execution) == ["start", "x"]
        failed = execution.node_executions[1]
        assert failed.status == ExecutionStatus.FAILED
        assert failed.error.code == "NODE_EXECUTION_FAILED"
        assert "boom in x" in failed.error.message
        assert failed.error.details["nodeId"] == "x"
        assert any(log.level == "error" for log in failed.logs)

    @pytest.mark.asyncio
    async def test_on_error_edge_routes_failures(self, orchestrator, make_workflow, failing_handler):
        """onError edges fire for failed nodes and the failed node's output is empty."""
        orchestrator.registry.register(failing_handler)
        workflow = make_workflow(
            [("start", "start"), ("x", "explode"), ("ok", "end"), ("recover", "transform")],
            [("start", "x", None), ("x", "ok", "onSuccess"), ("x", "recover", "onError")],
            configs={"recover": {"assignments": {"recovered": "true"}}},
        )

        execution = await orchestrator.execute_workflow(workflow, {})

        assert node_ids(execution) == ["start", "x", "recover"]
        assert execution.node_executions[1].output == {}
        assert execution.output["recovered"] is True

    @pytest.mark.asyncio
    async def test_cancel_between_dispatches(self, orchestrator, make_workflow):
        """A cancel requested while node 1 runs stops the run before node 2."""

        async def start_and_cancel(node, context, execution_id):
            orchestrator.request_cancel(execution_id)
            return dict(context)

        orchestrator.registry.register(FunctionHandler("start", start_and_cancel))
        workflow = make_workflow(
            [("start", "start"), ("middle", "transform"), ("end", "end")],
            [("start", "middle", None), ("middle", "end", None)],
        )

        execution = await orchestrator.execute_workflow(workflow, {})

        assert execution.status == ExecutionStatus.CANCELLED
        assert node_ids(execution) == ["start"]
        assert execution.error is None
        assert not orchestrator.is_active(execution.id)


class TestStructuralFailures:
    """Failures that end a run as failed."""

    @pytest.mark.asyncio
    async def test_no_start_node(self, orchestrator, store, make_workflow):
        """A graph without a start node fails before any dispatch."""
        workflow = make_workflow([("a", "email"), ("b", "end")], [("a", "b", None)])

        execution = await orchestrator.execute_workflow(workflow, {})

        assert execution.status == ExecutionStatus.FAILED
        assert execution.node_executions == []
        assert execution.error.code == "NO_START_NODE"

        stored = await store.find_by_id(execution.id)
        assert stored.status == ExecutionStatus.FAILED

    @pytest.mark.asyncio
    async def test_unknown_node_type(self, orchestrator, make_workflow):
        """Reaching an unregistered node type fails the run."""
        workflow = make_workflow(
            [("start", "start"), ("mystery", "teleport"), ("end", "end")],
            [("start", "mystery", None), ("mystery", "end", None)],
        )

        execution = await orchestrator.execute_workflow(workflow, {})

        assert execution.status == ExecutionStatus.FAILED
        assert execution.error.code == "UNKNOWN_NODE_TYPE"
        assert "teleport" in execution.error.message
        assert node_ids(execution) == ["start"]

    @pytest.mark.asyncio
    async def test_handler_contract_violation(self, orchestrator, make_workflow):
        """A handler returning a non-mapping fails both the node and the run."""

        async def returns_list(node, context, execution_id):
            return ["not", "a", "mapping"]

        orchestrator.registry.register(FunctionHandler("broken", returns_list))
        workflow = make_workflow(
            [("start", "start"), ("bad", "broken"), ("end", "end")],
            [("start", "bad", None), ("bad", "end", None)],
        )

        execution = await orchestrator.execute_workflow(workflow, {})

        assert execution.status == ExecutionStatus.FAILED
        assert execution.error.code == "HANDLER_CONTRACT_VIOLATION"
        assert execution.node_executions[-1].status == ExecutionStatus.FAILED
        assert node_ids(execution) == ["start", "bad"]

    @pytest.mark.asyncio
    async def test_timeout(self, orchestrator, make_workflow):
        """Exceeding the workflow timeout ends the run with timeout status."""
        workflow = make_workflow(
            [("start", "start"), ("wait", "delay"), ("end", "end")],
            [("start", "wait", None), ("wait", "end", None)],
            configs={"wait": {"delay": 200}},
            timeout=50,
        )

        execution = await orchestrator.execute_workflow(workflow, {})

        assert execution.status == ExecutionStatus.TIMEOUT
        assert execution.error.code == "EXECUTION_TIMEOUT"
        assert node_ids(execution) == ["start", "wait"]


class TestTraversal:
    """Graph traversal rules."""

    @pytest.mark.asyncio
    async def test_converging_edges_execute_once(self, orchestrator, make_workflow):
        """A node reached by several paths runs once."""
        workflow = make_workflow(
            [("start", "start"), ("a", "transform"), ("b", "transform"), ("end", "end")],
            [("start", "a", None), ("start", "b", None), ("a", "end", None), ("b", "end", None)],
            configs={
                "a": {"assignments": {"from_a": "1"}},
                "b": {"assignments": {"from_b": "2"}},
            },
        )

        execution = await orchestrator.execute_workflow(workflow, {})

        assert node_ids(execution) == ["start", "a", "b", "end"]
        assert execution.output["from_a"] == 1
        assert execution.output["from_b"] == 2

    @pytest.mark.asyncio
    async def test_cycle_terminates(self, orchestrator, make_workflow):
        """Cycles do not loop; each node runs at most once."""
        workflow = make_workflow(
            [("start", "start"), ("a", "transform"), ("b", "transform")],
            [("start", "a", None), ("a", "b", None), ("b", "a", None)],
        )

        execution = await orchestrator.execute_workflow(workflow, {})

        assert execution.status == ExecutionStatus.COMPLETED
        assert node_ids(execution) == ["start", "a", "b"]

    @pytest.mark.asyncio
    async def test_cancel_after_last_node_completes(self, orchestrator, make_workflow):
        """Only already-executed ids left in the frontier: the run still completes."""

        async def finish_and_cancel(node, context, execution_id):
            orchestrator.request_cancel(execution_id)
            return {"finished": True}

        orchestrator.registry.register(FunctionHandler("finish", finish_and_cancel))
        workflow = make_workflow(
            [("start", "start"), ("last", "finish")],
            [("start", "last", None), ("last", "start", None)],
        )

        execution = await orchestrator.execute_workflow(workflow, {})

        assert execution.status == ExecutionStatus.COMPLETED
        assert execution.output["finished"] is True
        assert node_ids(execution) == ["start", "last"]

    @pytest.mark.asyncio
    async def test_deadline_after_last_node_completes(self, orchestrator, make_workflow):
        """A deadline passing after the last node ran does not time the run out."""
        workflow = make_workflow(
            [("start", "start"), ("wait", "delay")],
            [("start", "wait", None), ("wait", "start", None)],
            configs={"wait": {"delay": 100}},
            timeout=20,
        )

        execution = await orchestrator.execute_workflow(workflow, {})

        assert execution.status == ExecutionStatus.COMPLETED
        assert execution.error is None
        assert node_ids(execution) == ["start", "wait"]

    @pytest.mark.asyncio
    async def test_context_propagates(self, orchestrator, make_workflow):
        """Each node sees the outputs of the nodes before it."""
        workflow = make_workflow(
            [("start", "start"), ("t1", "transform"), ("t2", "transform"), ("end", "end")],
            [("start", "t1", None), ("t1", "t2", None), ("t2", "end", None)],
            configs={
                "t1": {"assignments": {"total": "amount * 2"}},
                "t2": {"assignments": {"doubled": "total * 2"}},
            },
        )

        execution = await orchestrator.execute_workflow(workflow, {"amount": 5})

        assert execution.node_executions[2].input["total"] == 10
        assert execution.output["total"] == 10
        assert execution.output["doubled"] == 20
        assert execution.output["amount"] == 5

    @pytest.mark.asyncio
    async def test_dangling_edge_is_skipped(self, orchestrator, make_workflow):
        """Edges to missing nodes are ignored."""
        workflow = make_workflow(
            [("start", "start"), ("end", "end")],
            [("start", "ghost", None), ("start", "end", None)],
        )

        execution = await orchestrator.execute_workflow(workflow, {})

        assert execution.status == ExecutionStatus.COMPLETED
        assert node_ids(execution) == ["start", "end"]

    @pytest.mark.asyncio
    async def test_handlers_cannot_mutate_context(self, orchestrator, make_workflow):
        """Handlers receive a read-only snapshot."""

        async def mutate(node, context, execution_id):
            context["hacked"] = True
            return {}

        orchestrator.registry.register(FunctionHandler("mutate", mutate))
        workflow = make_workflow(
            [("start", "start"), ("m", "mutate"), ("end", "end")],
            [("start", "m", None), ("m", "end", None)],
        )

        execution = await orchestrator.execute_workflow(workflow, {"value": 1})

        assert execution.node_executions[1].status == ExecutionStatus.FAILED
        assert "hacked" not in execution.output

    @pytest.mark.asyncio
    async def test_workflow_is_not_mutated(self, orchestrator, make_workflow):
        """A run never changes the workflow it was given."""
        workflow = make_workflow(
            [("start", "start"), ("end", "end")],
            [("start", "end", None)],
        )
        before = workflow.model_dump()

        await orchestrator.execute_workflow(workflow, {"x": 1})

        assert workflow.model_dump() == before


class TestRetries:
    """Per-node retry policy."""

    @pytest.mark.asyncio
    async def test_flaky_node_recovers(self, orchestrator, make_workflow):
        """A node that fails then succeeds records its attempts."""
        calls = {"count": 0}

        async def flaky(node, context, execution_id):
            calls["count"] += 1
            if calls["count"] < 3:
                raise RuntimeError("temporary")
            return {"ok": True}

        orchestrator.registry.register(FunctionHandler("flaky", flaky))
        workflow = make_workflow(
            [("start", "start"), ("f", "flaky")],
            [("start", "f", None)],
            retry_attempts=2,
            retry_delay=0,
        )

        execution = await orchestrator.execute_workflow(workflow, {})

        node = execution.node_executions[1]
        assert node.status == ExecutionStatus.COMPLETED
        assert node.attempts == 3
        assert len([log for log in node.logs if log.level == "warn"]) == 2

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, orchestrator, make_workflow, failing_handler):
        """A node failing every attempt is failed after the last one."""
        orchestrator.registry.register(failing_handler)
        workflow = make_workflow(
            [("start", "start"), ("x", "explode")],
            [("start", "x", None)],
            retry_attempts=1,
            retry_delay=0,
        )

        execution = await orchestrator.execute_workflow(workflow, {})

        node = execution.node_executions[1]
        assert node.status == ExecutionStatus.FAILED
        assert node.attempts == 2


class TestProgress:
    """Progress events published during a run."""

    @pytest.mark.asyncio
    async def test_progress_is_monotonic(self, orchestrator, broadcaster, make_workflow):
        """Progress never decreases and reaches 100 exactly once."""
        workflow = make_workflow(
            [("start", "start"), ("a", "transform"), ("b", "report"), ("end", "end")],
            [("start", "a", None), ("a", "b", None), ("b", "end", None)],
        )

        execution = await orchestrator.execute_workflow(workflow, {})

        progress = [e.progress for e in broadcaster.events if e.execution_id == execution.id]
        assert progress == sorted(progress)
        assert progress.count(100) == 1
        assert progress[-1] == 100

    @pytest.mark.asyncio
    async def test_event_sequence(self, orchestrator, broadcaster, make_workflow):
        """Status, node_start and node_complete events arrive in dispatch order."""
        workflow = make_workflow([("start", "start"), ("end", "end")], [("start", "end", None)])

        await orchestrator.execute_workflow(workflow, {})

        assert [(e.type, e.node_id) for e in broadcaster.events] == [
            ("status", None),
            ("status", None),
            ("node_start", "start"),
            ("node_complete", "start"),
            ("node_start", "end"),
            ("node_complete", "end"),
            ("status", None),
        ]
        assert [e.status for e in broadcaster.of_type("status")] == ["pending", "running", "completed"]

    @pytest.mark.asyncio
    async def test_notifications_follow_policy(self, orchestrator, broadcaster, make_workflow):
        """Workflow-level notifications are published only when enabled."""
        workflow = make_workflow(
            [("start", "start"), ("end", "end")],
            [("start", "end", None)],
            notifications={"on_start": True, "on_success": True},
        )

        await orchestrator.execute_workflow(workflow, {})

        events = [e.data["event"] for e in broadcaster.of_type("notification")]
        assert events == ["start", "success"]

    @pytest.mark.asyncio
    async def test_broadcaster_failures_are_ignored(self, registry, store, make_workflow):
        """A failing broadcaster never affects the run."""
        orchestrator = ExecutionOrchestrator(registry, store, broadcaster=FailingBroadcaster())
        workflow = make_workflow([("start", "start"), ("end", "end")], [("start", "end", None)])

        execution = await orchestrator.execute_workflow(workflow, {})

        assert execution.status == ExecutionStatus.COMPLETED

    def test_calculate_progress_caps_until_terminal(self):
        """Progress stays below 100 until the run is terminal."""
        execution = WorkflowExecution(id="run-1", status=ExecutionStatus.RUNNING)
        assert calculate_progress(execution, 0) == 0
        assert calculate_progress(execution, 4) == 0

        execution.status = ExecutionStatus.COMPLETED
        assert calculate_progress(execution, 4) == 100


class TestLifecycle:
    """Persistence, cancellation and retry of runs."""

    @pytest.mark.asyncio
    async def test_run_is_persisted(self, orchestrator, store, make_workflow):
        """The stored record matches the returned run."""
        workflow = make_workflow([("start", "start"), ("end", "end")], [("start", "end", None)])

        execution = await orchestrator.execute_workflow(workflow, {"k": "v"}, actor_id="user-7")

        stored = await store.find_by_id(execution.id)
        assert stored.status == ExecutionStatus.COMPLETED
        assert node_ids(stored) == ["start", "end"]
        assert stored.output == execution.output
        assert stored.metadata.actor_id == "user-7"
        assert stored.trigger.type == TriggerType.MANUAL.value
        assert stored.trigger.data == {"userId": "user-7"}
        assert stored.metadata.tags == ["manual-execution"]

    @pytest.mark.asyncio
    async def test_unused_approval_decisions_are_dropped(self, orchestrator, approvals, make_workflow):
        """Decisions for nodes that never waited do not outlive the run."""
        workflow = make_workflow([("start", "start"), ("end", "end")], [("start", "end", None)])
        execution = await orchestrator.create_execution(workflow, {})
        approvals.resolve(execution.id, "no-such-node", ApprovalDecision(approved=True))

        await orchestrator.run(execution, workflow)

        assert approvals.discard(execution.id) == 0

    @pytest.mark.asyncio
    async def test_cancel_before_start(self, orchestrator, make_workflow):
        """A run cancelled while pending never dispatches a node."""
        workflow = make_workflow([("start", "start"), ("end", "end")], [("start", "end", None)])

        execution = await orchestrator.create_execution(workflow, {})
        assert await orchestrator.cancel_execution(execution.id) is True
        result = await orchestrator.run(execution, workflow)

        assert result.status == ExecutionStatus.CANCELLED
        assert result.node_executions == []

    @pytest.mark.asyncio
    async def test_cancel_stored_execution(self, orchestrator, store):
        """Runs not active in this process are cancelled through the store."""
        await store.create(WorkflowExecution(id="remote-1", status=ExecutionStatus.PENDING))
        await store.create(WorkflowExecution(id="remote-2", status=ExecutionStatus.COMPLETED))

        assert await orchestrator.cancel_execution("remote-1") is True
        assert await orchestrator.cancel_execution("remote-2") is False
        assert await orchestrator.cancel_execution("missing") is False

        assert (await store.find_by_id("remote-1")).status == ExecutionStatus.CANCELLED
        assert (await store.find_by_id("remote-2")).status == ExecutionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_retry_failed_execution(self, orchestrator, make_workflow):
        """Retrying a failed run starts a new run with the same input."""
        workflow = make_workflow(
            [("start", "start"), ("step", "custom_step")],
            [("start", "step", None)],
        )
        failed = await orchestrator.execute_workflow(
            workflow, {"order": 42}, trigger=ExecutionTrigger(type="webhook", data={"source": "shop"})
        )
        assert failed.status == ExecutionStatus.FAILED

        async def custom_step(node, context, execution_id):
            return {"handled": context["order"]}

        orchestrator.registry.register(FunctionHandler("custom_step", custom_step))
        retried = await orchestrator.retry_execution(failed.id, workflow, actor_id="user-2")

        assert retried.id != failed.id
        assert retried.status == ExecutionStatus.COMPLETED
        assert retried.output["handled"] == 42
        assert retried.trigger.type == "webhook"
        assert retried.trigger.data == {"source": "shop", "retry_of": failed.id}

    @pytest.mark.asyncio
    async def test_retry_rejects_completed_and_unknown(self, orchestrator, make_workflow):
        """Only failed runs can be retried."""
        workflow = make_workflow([("start", "start")], [])
        completed = await orchestrator.execute_workflow(workflow, {})

        with pytest.raises(ExecutionStateError):
            await orchestrator.retry_execution(completed.id, workflow)
        with pytest.raises(ExecutionNotFoundError):
            await orchestrator.retry_execution("does-not-exist", workflow)

    @pytest.mark.asyncio
    async def test_concurrent_runs_are_bounded(self, orchestrator, make_workflow):
        """max_concurrent_executions limits parallel runs of one workflow."""
        state = {"active": 0, "peak": 0}

        async def inspect(node, context, execution_id):
            state["active"] += 1
            state["peak"] = max(state["peak"], state["active"])
            await asyncio.sleep(0.01)
            state["active"] -= 1
            return {}

        orchestrator.registry.register(FunctionHandler("inspect", inspect))
        workflow = make_workflow(
            [("start", "start"), ("p", "inspect")],
            [("start", "p", None)],
            max_concurrent_executions=1,
        )

        results = await asyncio.gather(
            orchestrator.execute_workflow(workflow, {}),
            orchestrator.execute_workflow(workflow, {}),
        )

        assert all(r.status == ExecutionStatus.COMPLETED for r in results)
        assert state["peak"] == 1
