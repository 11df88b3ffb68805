"""
Workflow execution tracking models.
"""

from typing import Optional, List, Dict, Any
from enum import Enum
from datetime import datetime, timezone
from pydantic import BaseModel, Field

from .workflow import Workflow


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ExecutionStatus(str, Enum):
    """Workflow and node execution status."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"


# Tuple, not set: str values stored on models must compare equal to members
TERMINAL_STATUSES = (
    ExecutionStatus.COMPLETED,
    ExecutionStatus.FAILED,
    ExecutionStatus.CANCELLED,
    ExecutionStatus.TIMEOUT,
)


def status_value(value: Any) -> str:
    """Plain string value of a status or other enum field that may or may not be a member."""
    return value.value if isinstance(value, Enum) else value


class TriggerType(str, Enum):
    """What started an execution."""
    MANUAL = "manual"
    SCHEDULE = "schedule"
    WEBHOOK = "webhook"
    EVENT = "event"


class ExecutionTrigger(BaseModel):
    """Opaque trigger descriptor, stored and forwarded untouched."""
    type: TriggerType = TriggerType.MANUAL.value
    data: Dict[str, Any] = Field(default_factory=dict)

    class Config:
        use_enum_values = True


class ExecutionError(BaseModel):
    """Error attached to a run or a node execution."""
    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class ExecutionLog(BaseModel):
    """A single log entry."""
    timestamp: datetime = Field(default_factory=utcnow)
    level: str = "info"  # info, warn, error, debug
    message: str
    data: Dict[str, Any] = Field(default_factory=dict)


class ExecutionMetadata(BaseModel):
    """Bookkeeping about who and what started a run."""
    actor_id: Optional[str] = None
    session_id: Optional[str] = None
    tags: List[str] = Field(default_factory=list)


class NodeExecution(BaseModel):
    """Record of executing one node within one run."""
    id: str
    node_id: str
    node_type: Optional[str] = None
    status: ExecutionStatus = ExecutionStatus.RUNNING
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    duration: Optional[int] = None
    input: Dict[str, Any] = Field(default_factory=dict)
    output: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[ExecutionError] = None
    logs: List[ExecutionLog] = Field(default_factory=list)
    attempts: int = 0

    class Config:
        use_enum_values = True

    @property
    def is_settled(self) -> bool:
        return self.status in (ExecutionStatus.COMPLETED, ExecutionStatus.FAILED)


class WorkflowExecution(BaseModel):
    """Complete workflow execution record (a run)."""
    id: str
    workflow_id: Optional[str] = None
    organization_id: Optional[str] = None
    status: ExecutionStatus = ExecutionStatus.PENDING
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    duration: Optional[int] = None
    trigger: ExecutionTrigger = Field(default_factory=ExecutionTrigger)
    input: Dict[str, Any] = Field(default_factory=dict)
    output: Dict[str, Any] = Field(default_factory=dict)
    node_executions: List[NodeExecution] = Field(default_factory=list)
    error: Optional[ExecutionError] = None
    metadata: ExecutionMetadata = Field(default_factory=ExecutionMetadata)

    class Config:
        use_enum_values = True

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class ExecutionEvent(BaseModel):
    """Progress event published to subscribers of a run."""
    type: str = "execution-updated"
    execution_id: str
    status: str
    progress: Optional[int] = None
    node_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)
    data: Dict[str, Any] = Field(default_factory=dict)


class ExecutionSummary(BaseModel):
    """Summary of an execution for list views."""
    id: str
    workflow_id: Optional[str]
    organization_id: Optional[str]
    status: str
    trigger_type: Optional[str] = None
    node_count: int = 0
    duration: Optional[int] = None
    started_at: datetime
    completed_at: Optional[datetime] = None


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int


class ExecutionPage(BaseModel):
    """One page of execution summaries."""
    data: List[ExecutionSummary] = Field(default_factory=list)
    pagination: Pagination


class ExecutionMetrics(BaseModel):
    total_executions: int = 0
    successful_executions: int = 0
    failed_executions: int = 0
    average_duration: float = 0.0
    total_errors: int = 0


class ExecutionAnalytics(BaseModel):
    """Time-windowed aggregation over a workflow's executions."""
    workflow_id: str
    period: str
    since: datetime
    metrics: ExecutionMetrics = Field(default_factory=ExecutionMetrics)


class ExecutionRequest(BaseModel):
    """Input for starting a workflow execution over HTTP."""
    workflow_id: Optional[str] = Field(default=None, description="Stored workflow definition id")
    workflow: Optional[Workflow] = Field(default=None, description="Inline workflow graph")
    input: Dict[str, Any] = Field(default_factory=dict, description="Input data for the workflow")
    actor_id: Optional[str] = None
    organization_id: Optional[str] = None
    trigger: Optional[ExecutionTrigger] = None
    wait: bool = Field(default=True, description="Wait for the run to finish before responding")


class ApprovalDecision(BaseModel):
    """Decision for a pending approval node."""
    approved: bool
    approver: Optional[str] = None
    comment: Optional[str] = None
