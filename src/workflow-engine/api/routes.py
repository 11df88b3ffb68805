"""
REST API routes for workflow engine.
"""

import asyncio
import logging
from typing import Optional, List, Set

from fastapi import APIRouter, HTTPException, Query

from models.workflow import Workflow
from models.execution import (
    WorkflowExecution,
    ExecutionLog,
    ExecutionPage,
    ExecutionAnalytics,
    ExecutionRequest,
    ApprovalDecision,
    status_value,
)
from engine.errors import EngineError, ExecutionNotFoundError, ExecutionStateError
from engine.logs import collect_execution_logs

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", tags=["workflows"])


# These will be set by the main app
_orchestrator = None
_store = None
_workflows = None
_approvals = None

# Strong references to background runs until they finish
_background: Set[asyncio.Task] = set()


def set_dependencies(orchestrator, store, workflows, approvals):
    """Set dependencies from main app."""
    global _orchestrator, _store, _workflows, _approvals
    _orchestrator = orchestrator
    _store = store
    _workflows = workflows
    _approvals = approvals


def _background_done(task: asyncio.Task):
    """Forget a finished background run and log how it failed, if it did."""
    _background.discard(task)
    if task.cancelled():
        logger.warning("Background execution was cancelled")
        return
    error = task.exception()
    if error is not None:
        logger.error(f"Background execution crashed: {error}", exc_info=error)


def _require_ready():
    if not _orchestrator or not _store or not _workflows:
        raise HTTPException(status_code=503, detail="Service not ready")


def _raise_http(error: Exception):
    """Map engine errors to HTTP errors."""
    if isinstance(error, ExecutionNotFoundError):
        raise HTTPException(status_code=404, detail=str(error))
    if isinstance(error, ExecutionStateError):
        raise HTTPException(status_code=409, detail=str(error))
    raise HTTPException(status_code=400, detail=str(error))


async def _load_workflow(workflow_id: str, organization_id: Optional[str] = None) -> Workflow:
    workflow = await _workflows.get_workflow(workflow_id, organization_id)
    if not workflow:
        raise HTTPException(status_code=404, detail="Workflow not found")
    return workflow


async def _get_execution_or_404(execution_id: str) -> WorkflowExecution:
    execution = await _store.find_by_id(execution_id)
    if not execution:
        raise HTTPException(status_code=404, detail="Execution not found")
    return execution


# Workflow Definitions

@router.post("/workflows", response_model=dict)
async def create_workflow(workflow: Workflow):
    """Store a workflow definition."""
    _require_ready()

    try:
        workflow_id = await _workflows.create_workflow(workflow)
        return {"id": workflow_id, "name": workflow.name}
    except ValueError as e:
        logger.error(f"Failed to create workflow: {e}")
        raise HTTPException(status_code=400, detail=str(e))


@router.get("/workflows", response_model=List[dict])
async def list_workflows(organization_id: Optional[str] = None):
    """List stored workflow definitions."""
    _require_ready()

    workflows = await _workflows.list_workflows(organization_id=organization_id)
    return [
        {
            "id": w.id,
            "name": w.name,
            "version": w.version,
            "description": w.description,
            "node_count": len(w.nodes),
            "created_at": w.created_at.isoformat() if w.created_at else None,
        }
        for w in workflows
    ]


@router.get("/workflows/{workflow_id}", response_model=Workflow)
async def get_workflow(workflow_id: str, organization_id: Optional[str] = None):
    """Get a stored workflow definition."""
    _require_ready()
    return await _load_workflow(workflow_id, organization_id)


@router.get("/workflows/{workflow_id}/analytics", response_model=ExecutionAnalytics)
async def get_workflow_analytics(
    workflow_id: str,
    organization_id: Optional[str] = None,
    period: str = Query(default="month", pattern="^(day|week|month|year)$"),
):
    """Aggregate a workflow's executions over a time window."""
    _require_ready()
    return await _store.aggregate(workflow_id, organization_id=organization_id, period=period)


@router.get("/node-types")
async def list_node_types():
    """List node types with a registered handler."""
    _require_ready()
    return {"node_types": _orchestrator.registry.list_types()}


# Executions

@router.post("/executions", response_model=WorkflowExecution)
async def start_execution(request: ExecutionRequest):
    """
    Start a workflow execution.

    With wait=false the run continues in the background and the pending
    record is returned immediately.
    """
    _require_ready()

    if request.workflow is not None:
        workflow = request.workflow
    elif request.workflow_id:
        workflow = await _load_workflow(request.workflow_id, request.organization_id)
    else:
        raise HTTPException(status_code=400, detail="Either workflow or workflow_id must be provided")

    if request.organization_id and not workflow.organization_id:
        workflow = workflow.model_copy(update={"organization_id": request.organization_id})

    try:
        execution = await _orchestrator.create_execution(
            workflow, request.input, request.actor_id, request.trigger
        )
    except (EngineError, ValueError) as e:
        logger.error(f"Failed to start execution: {e}")
        _raise_http(e)

    if request.wait:
        return await _orchestrator.run(execution, workflow)

    task = asyncio.create_task(_orchestrator.run(execution.model_copy(deep=True), workflow))
    _background.add(task)
    task.add_done_callback(_background_done)
    return execution


@router.get("/executions", response_model=ExecutionPage)
async def list_executions(
    organization_id: Optional[str] = None,
    workflow_id: Optional[str] = None,
    status: Optional[str] = None,
    sort_by: str = Query(default="started_at"),
    sort_order: str = Query(default="desc", pattern="^(asc|desc)$"),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
):
    """List executions for an organization or a workflow."""
    _require_ready()

    if workflow_id:
        try:
            return await _store.list_by_workflow(
                workflow_id,
                organization_id=organization_id,
                page=page,
                limit=limit,
                status=status,
                sort_by=sort_by,
                sort_order=sort_order,
            )
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))

    if not organization_id:
        raise HTTPException(status_code=400, detail="organization_id or workflow_id is required")

    return await _store.list_by_organization(organization_id, page=page, limit=limit, status=status)


@router.get("/executions/{execution_id}", response_model=WorkflowExecution)
async def get_execution(execution_id: str):
    """Get execution details."""
    _require_ready()
    return await _get_execution_or_404(execution_id)


@router.get("/executions/{execution_id}/logs", response_model=List[ExecutionLog])
async def get_execution_logs(execution_id: str):
    """Get the merged log timeline of an execution."""
    _require_ready()
    execution = await _get_execution_or_404(execution_id)
    return collect_execution_logs(execution)


@router.post("/executions/{execution_id}/cancel")
async def cancel_execution(execution_id: str):
    """Cancel a pending or running execution."""
    _require_ready()

    execution = await _get_execution_or_404(execution_id)
    if not await _orchestrator.cancel_execution(execution_id):
        raise HTTPException(
            status_code=409,
            detail=f"Execution cannot be cancelled (status: {status_value(execution.status)})",
        )
    return {"status": "cancelling", "execution_id": execution_id}


@router.post("/executions/{execution_id}/retry", response_model=WorkflowExecution)
async def retry_execution(execution_id: str, actor_id: Optional[str] = None):
    """Re-run a failed execution with its original input."""
    _require_ready()

    original = await _get_execution_or_404(execution_id)
    if not original.workflow_id:
        raise HTTPException(status_code=409, detail="Execution was not started from a stored workflow")
    workflow = await _load_workflow(original.workflow_id)

    try:
        return await _orchestrator.retry_execution(execution_id, workflow, actor_id=actor_id)
    except EngineError as e:
        _raise_http(e)


@router.post("/executions/{execution_id}/approvals/{node_id}")
async def submit_approval(execution_id: str, node_id: str, decision: ApprovalDecision):
    """Submit a decision for an approval node."""
    _require_ready()
    if not _approvals:
        raise HTTPException(status_code=503, detail="Approvals not available")

    await _get_execution_or_404(execution_id)
    if not _orchestrator.is_active(execution_id):
        raise HTTPException(status_code=409, detail="Execution is not running")
    delivered = _approvals.resolve(execution_id, node_id, decision)
    return {"execution_id": execution_id, "node_id": node_id, "delivered": delivered}
