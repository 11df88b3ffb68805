"""
Workflow execution orchestrator.

Drives one run from pending to a terminal state:

- Breadth-first traversal from the start node, each node executed at most once
- Per-node dispatch through the handler registry
- Edge selection through the condition evaluator
- Persistence of every transition through the execution store
- Progress events through the broadcaster

Node failures are recorded and routed through the graph's edges. Only
structural problems (no start node, unknown node type, handler contract
violations) and the run timeout end a run as an error.
"""

import asyncio
import logging
import uuid
from collections import deque
from typing import Any, Deque, Dict, Optional, Set, Tuple

from opentelemetry import trace

from models.workflow import Workflow, Node
from models.execution import (
    WorkflowExecution,
    NodeExecution,
    ExecutionStatus,
    ExecutionError,
    ExecutionEvent,
    ExecutionTrigger,
    ExecutionMetadata,
    status_value,
    utcnow,
)
from persistence.store import ExecutionStore
from .broadcaster import ProgressBroadcaster, NullBroadcaster
from .conditions import ConditionEvaluator
from .registry import NodeHandlerRegistry
from .approvals import ApprovalBroker
from .errors import (
    EngineError,
    NoStartNodeError,
    ExecutionTimeoutError,
    ExecutionNotFoundError,
    ExecutionStateError,
)

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

RETRYABLE_STATUSES = (ExecutionStatus.FAILED, ExecutionStatus.TIMEOUT)
CANCELLABLE_STATUSES = (ExecutionStatus.PENDING, ExecutionStatus.RUNNING)


def calculate_progress(execution: WorkflowExecution, total_nodes: int) -> int:
    """
    Percentage of the graph's nodes that have settled.

    Capped at 99 until the run is terminal, so 100 is reported exactly once.
    """
    if execution.is_terminal:
        return 100
    if total_nodes <= 0:
        return 0
    settled = sum(1 for n in execution.node_executions if n.is_settled)
    return min(99, int(settled * 100 / total_nodes))


class ExecutionOrchestrator:
    """
    Executes workflow graphs.

    One instance serves many runs; each run executes on its own task with
    sequential node dispatch.
    """

    def __init__(
        self,
        registry: NodeHandlerRegistry,
        store: ExecutionStore,
        broadcaster: Optional[ProgressBroadcaster] = None,
        evaluator: Optional[ConditionEvaluator] = None,
        approvals: Optional[ApprovalBroker] = None,
    ):
        """
        Initialize orchestrator.

        Args:
            registry: Node handler registry
            store: Execution store for durability
            broadcaster: Progress broadcaster (events are dropped if omitted)
            evaluator: Edge condition evaluator
            approvals: Approval broker whose leftover decisions are dropped when a run ends
        """
        self.registry = registry
        self.store = store
        self.broadcaster = broadcaster or NullBroadcaster()
        self.evaluator = evaluator or ConditionEvaluator()
        self.approvals = approvals
        self._active: Set[str] = set()
        self._cancel_requested: Set[str] = set()
        self._slots: Dict[str, asyncio.Semaphore] = {}

    # Entry points

    async def execute_workflow(
        self,
        workflow: Workflow,
        input_data: Optional[Dict[str, Any]] = None,
        actor_id: Optional[str] = None,
        trigger: Optional[ExecutionTrigger] = None,
    ) -> WorkflowExecution:
        """
        Execute a workflow against an input and return the finished run.

        Args:
            workflow: Validated workflow graph
            input_data: Runtime input seeding the context
            actor_id: Who started the run
            trigger: Trigger descriptor (manual if omitted)

        Returns:
            The run in its terminal state
        """
        execution = await self.create_execution(workflow, input_data, actor_id, trigger)
        return await self.run(execution, workflow)

    start = execute_workflow

    async def create_execution(
        self,
        workflow: Workflow,
        input_data: Optional[Dict[str, Any]] = None,
        actor_id: Optional[str] = None,
        trigger: Optional[ExecutionTrigger] = None,
    ) -> WorkflowExecution:
        """Create, persist and announce a pending run without starting it."""
        execution_id = str(uuid.uuid4())
        trigger = trigger or ExecutionTrigger(data={"userId": actor_id} if actor_id else {})

        execution = WorkflowExecution(
            id=execution_id,
            workflow_id=workflow.id,
            organization_id=workflow.organization_id,
            status=ExecutionStatus.PENDING,
            started_at=utcnow(),
            trigger=trigger,
            input=dict(input_data or {}),
            metadata=ExecutionMetadata(
                actor_id=actor_id,
                session_id=execution_id,
                tags=[f"{status_value(trigger.type)}-execution"],
            ),
        )
        # Registered before the first await so a cancel can never miss it
        self._active.add(execution_id)

        await self.store.create(execution)
        await self._publish(execution, len(workflow.nodes), "status")
        logger.info(f"Created execution {execution_id} for workflow {workflow.id}")
        return execution

    async def run(self, execution: WorkflowExecution, workflow: Workflow) -> WorkflowExecution:
        """
        Drive a pending run to a terminal state.

        Args:
            execution: Run created by create_execution
            workflow: Workflow graph to traverse

        Returns:
            The same run, now terminal
        """
        workflow = workflow.model_copy(deep=True)
        self._active.add(execution.id)

        try:
            with tracer.start_as_current_span("workflow.execute") as span:
                span.set_attribute("workflow.execution_id", execution.id)
                span.set_attribute("workflow.id", workflow.id or "")

                start_node = workflow.find_start_node()
                if start_node is None:
                    await self._finish(execution, workflow, ExecutionStatus.FAILED,
                                       error=NoStartNodeError("No start node found in workflow"))
                    return execution

                async with self._slot(workflow):
                    if execution.id in self._cancel_requested:
                        await self._finish(execution, workflow, ExecutionStatus.CANCELLED)
                        return execution

                    execution.status = ExecutionStatus.RUNNING
                    await self.store.patch_status(execution.id, ExecutionStatus.RUNNING)
                    await self._publish(execution, len(workflow.nodes), "status")
                    await self._notify(execution, workflow, "start")

                    await self._execute(execution, workflow, start_node)

                span.set_attribute("workflow.status", status_value(execution.status))
                return execution
        finally:
            self._active.discard(execution.id)
            self._cancel_requested.discard(execution.id)
            if self.approvals is not None:
                self.approvals.discard(execution.id)

    async def _execute(self, execution: WorkflowExecution, workflow: Workflow, start_node: Node) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + workflow.settings.timeout / 1000

        try:
            context, cancelled = await self._traverse(execution, workflow, start_node, deadline)
        except ExecutionTimeoutError as e:
            logger.warning(f"Execution {execution.id} timed out")
            await self._finish(execution, workflow, ExecutionStatus.TIMEOUT, error=e)
        except EngineError as e:
            logger.error(f"Execution {execution.id} failed: {e}")
            await self._finish(execution, workflow, ExecutionStatus.FAILED, error=e)
        except Exception as e:
            logger.exception(f"Execution {execution.id} failed unexpectedly")
            await self._finish(execution, workflow, ExecutionStatus.FAILED, error=e)
        else:
            if cancelled:
                logger.info(f"Execution {execution.id} cancelled")
                await self._finish(execution, workflow, ExecutionStatus.CANCELLED)
            else:
                await self._finish(execution, workflow, ExecutionStatus.COMPLETED, output=context)

    async def _traverse(
        self,
        execution: WorkflowExecution,
        workflow: Workflow,
        start_node: Node,
        deadline: float,
    ) -> Tuple[Dict[str, Any], bool]:
        """
        Breadth-first walk of the graph.

        Returns:
            Final context and whether the run was cancelled
        """
        loop = asyncio.get_running_loop()
        total_nodes = len(workflow.nodes)
        context: Dict[str, Any] = dict(execution.input)
        visited: Set[str] = set()
        frontier: Deque[str] = deque([start_node.id])

        async def on_node_start(node_execution: NodeExecution) -> None:
            execution.node_executions.append(node_execution)
            await self.store.replace(execution)
            await self._publish(execution, total_nodes, "node_start", node_id=node_execution.node_id)

        while frontier:
            node_id = frontier.popleft()
            if node_id in visited:
                continue

            node = workflow.get_node(node_id)
            if node is None:
                logger.warning(f"Edge target {node_id} not found in workflow {workflow.id}, skipping")
                continue

            # Only checked when there is a node left to run
            if execution.id in self._cancel_requested:
                return context, True
            if loop.time() >= deadline:
                raise ExecutionTimeoutError(
                    f"Execution exceeded timeout of {workflow.settings.timeout}ms"
                )

            node_execution = await self.registry.dispatch(
                node,
                context,
                execution.id,
                settings=workflow.settings,
                on_start=on_node_start,
            )
            await self.store.replace(execution)
            await self._publish(
                execution,
                total_nodes,
                "node_complete",
                node_id=node_id,
                data={"node_status": status_value(node_execution.status)},
            )

            visited.add(node_id)
            context.update(node_execution.output)

            # Re-enqueueing visited ids is allowed; they are skipped at pop time
            for edge in workflow.outgoing_edges(node_id):
                if self.evaluator.should_follow(edge, node_execution):
                    frontier.append(edge.target)

        return context, False

    # Cancellation and retry

    def is_active(self, execution_id: str) -> bool:
        return execution_id in self._active

    def request_cancel(self, execution_id: str) -> bool:
        """
        Ask an active run to stop at its next dispatch boundary.

        Returns:
            True if the run is active in this orchestrator
        """
        if execution_id not in self._active:
            return False
        self._cancel_requested.add(execution_id)
        logger.info(f"Cancellation requested for execution {execution_id}")
        return True

    async def cancel_execution(self, execution_id: str) -> bool:
        """
        Cancel a run, whether or not it is executing in this process.

        Returns:
            True if the run was active or its stored status was pending/running
        """
        if self.request_cancel(execution_id):
            return True
        return await self.store.patch_status(
            execution_id,
            ExecutionStatus.CANCELLED,
            only_if=CANCELLABLE_STATUSES,
        )

    async def retry_execution(
        self,
        execution_id: str,
        workflow: Workflow,
        actor_id: Optional[str] = None,
    ) -> WorkflowExecution:
        """
        Re-run a failed execution with its original input.

        Raises:
            ExecutionNotFoundError: If the execution does not exist
            ExecutionStateError: If the execution did not fail
        """
        original = await self.store.find_by_id(execution_id)
        if original is None:
            raise ExecutionNotFoundError(f"Execution not found: {execution_id}")
        if original.status not in RETRYABLE_STATUSES:
            raise ExecutionStateError(
                f"Only failed executions can be retried (status: {status_value(original.status)})"
            )

        trigger = ExecutionTrigger(
            type=original.trigger.type,
            data={**original.trigger.data, "retry_of": original.id},
        )
        return await self.execute_workflow(workflow, original.input, actor_id, trigger=trigger)

    # Internals

    def _slot(self, workflow: Workflow) -> asyncio.Semaphore:
        """Semaphore bounding concurrent runs of one workflow."""
        if workflow.id is None:
            return asyncio.Semaphore(workflow.settings.max_concurrent_executions)
        slot = self._slots.get(workflow.id)
        if slot is None:
            slot = asyncio.Semaphore(workflow.settings.max_concurrent_executions)
            self._slots[workflow.id] = slot
        return slot

    async def _finish(
        self,
        execution: WorkflowExecution,
        workflow: Workflow,
        status: ExecutionStatus,
        output: Optional[Dict[str, Any]] = None,
        error: Optional[Exception] = None,
    ) -> None:
        """Move a run to a terminal state, persist it and announce it."""
        notification = {
            ExecutionStatus.COMPLETED: "success",
            ExecutionStatus.FAILED: "error",
            ExecutionStatus.TIMEOUT: "timeout",
        }.get(status)
        if notification:
            await self._notify(execution, workflow, notification, error=error)

        execution.status = status
        execution.completed_at = utcnow()
        execution.duration = int((execution.completed_at - execution.started_at).total_seconds() * 1000)
        if output is not None:
            execution.output = output
        if error is not None:
            execution.error = ExecutionError(
                code=error.code if isinstance(error, EngineError) else EngineError.code,
                message=str(error) or type(error).__name__,
                details={"exception": type(error).__name__},
            )

        await self.store.replace(execution)
        await self._publish(
            execution,
            len(workflow.nodes),
            "status",
            data={"error": execution.error.model_dump()} if execution.error else None,
        )
        logger.info(f"Execution {execution.id} finished with status {status_value(status)} in {execution.duration}ms")

    async def _notify(
        self,
        execution: WorkflowExecution,
        workflow: Workflow,
        event_name: str,
        error: Optional[Exception] = None,
    ) -> None:
        """Publish a workflow-level notification if the workflow's policy asks for it."""
        policy = workflow.settings.notifications
        enabled = {
            "start": policy.on_start,
            "success": policy.on_success,
            "error": policy.on_error,
            "timeout": policy.on_timeout,
        }.get(event_name, False)
        if not enabled:
            return

        data: Dict[str, Any] = {"event": event_name, "workflow_id": workflow.id, "workflow_name": workflow.name}
        if error is not None:
            data["error"] = str(error)
        await self._publish(execution, len(workflow.nodes), "notification", data=data)

    async def _publish(
        self,
        execution: WorkflowExecution,
        total_nodes: int,
        event_type: str,
        node_id: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Publish a progress event; broadcaster failures never affect the run."""
        event = ExecutionEvent(
            type=event_type,
            execution_id=execution.id,
            status=status_value(execution.status),
            progress=calculate_progress(execution, total_nodes),
            node_id=node_id,
            data=data or {},
        )
        try:
            await self.broadcaster.publish(execution.id, event)
        except Exception as e:
            logger.warning(f"Failed to publish {event_type} for execution {execution.id}: {e}")
