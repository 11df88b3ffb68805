"""
Execution store contract and in-memory backing.
"""

import asyncio
import logging
import math
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence

from models.execution import (
    WorkflowExecution,
    ExecutionStatus,
    ExecutionSummary,
    ExecutionPage,
    ExecutionAnalytics,
    ExecutionMetrics,
    Pagination,
    TERMINAL_STATUSES,
    status_value,
    utcnow,
)

logger = logging.getLogger(__name__)

PERIOD_WINDOWS = {
    "day": timedelta(days=1),
    "week": timedelta(days=7),
    "month": timedelta(days=30),
    "year": timedelta(days=365),
}

SORTABLE_FIELDS = ("started_at", "completed_at", "duration", "status")


def period_start(period: str, now: Optional[datetime] = None) -> datetime:
    """Start of the analytics window for a period name; unknown periods mean a month."""
    now = now or utcnow()
    return now - PERIOD_WINDOWS.get(period, PERIOD_WINDOWS["month"])


def build_pagination(page: int, limit: int, total: int) -> Pagination:
    return Pagination(
        page=page,
        limit=limit,
        total=total,
        total_pages=math.ceil(total / limit) if limit else 0,
    )


def to_summary(execution: WorkflowExecution) -> ExecutionSummary:
    """Condense an execution into its list-view summary."""
    return ExecutionSummary(
        id=execution.id,
        workflow_id=execution.workflow_id,
        organization_id=execution.organization_id,
        status=status_value(execution.status),
        trigger_type=status_value(execution.trigger.type) if execution.trigger else None,
        node_count=len(execution.node_executions),
        duration=execution.duration,
        started_at=execution.started_at,
        completed_at=execution.completed_at,
    )


class ExecutionStore(ABC):
    """
    Durable record of runs and their node executions.

    Writes are linearizable per execution id. The orchestrator keeps the
    authoritative run in memory and only writes through the store.
    """

    @abstractmethod
    async def create(self, execution: WorkflowExecution) -> None:
        """Insert a new execution record."""
        pass

    @abstractmethod
    async def replace(self, execution: WorkflowExecution) -> None:
        """Overwrite an execution record, node executions included."""
        pass

    @abstractmethod
    async def patch_status(
        self,
        execution_id: str,
        status: ExecutionStatus,
        only_if: Optional[Sequence[ExecutionStatus]] = None,
    ) -> bool:
        """
        Update only the status of an execution.

        Args:
            execution_id: Execution to update
            status: New status
            only_if: Apply only when the current status is one of these

        Returns:
            True if a record was updated
        """
        pass

    @abstractmethod
    async def find_by_id(self, execution_id: str) -> Optional[WorkflowExecution]:
        """Get an execution by id."""
        pass

    @abstractmethod
    async def list_by_workflow(
        self,
        workflow_id: str,
        organization_id: Optional[str] = None,
        page: int = 1,
        limit: int = 10,
        status: Optional[str] = None,
        sort_by: str = "started_at",
        sort_order: str = "desc",
    ) -> ExecutionPage:
        """List a workflow's executions, newest first by default."""
        pass

    @abstractmethod
    async def list_by_organization(
        self,
        organization_id: str,
        page: int = 1,
        limit: int = 10,
        status: Optional[str] = None,
        workflow_id: Optional[str] = None,
    ) -> ExecutionPage:
        """List an organization's executions across workflows."""
        pass

    @abstractmethod
    async def aggregate(
        self,
        workflow_id: str,
        organization_id: Optional[str] = None,
        period: str = "month",
    ) -> ExecutionAnalytics:
        """Aggregate execution counts and durations over a time window."""
        pass


class InMemoryExecutionStore(ExecutionStore):
    """Process-local store used for tests and when no database is reachable."""

    def __init__(self):
        self._executions: Dict[str, WorkflowExecution] = {}
        self._lock = asyncio.Lock()

    async def create(self, execution: WorkflowExecution) -> None:
        async with self._lock:
            if execution.id in self._executions:
                raise ValueError(f"Execution already exists: {execution.id}")
            self._executions[execution.id] = execution.model_copy(deep=True)

    async def replace(self, execution: WorkflowExecution) -> None:
        async with self._lock:
            self._executions[execution.id] = execution.model_copy(deep=True)

    async def patch_status(
        self,
        execution_id: str,
        status: ExecutionStatus,
        only_if: Optional[Sequence[ExecutionStatus]] = None,
    ) -> bool:
        async with self._lock:
            stored = self._executions.get(execution_id)
            if stored is None:
                return False
            if only_if is not None and stored.status not in tuple(only_if):
                return False
            stored.status = status
            if status in TERMINAL_STATUSES and stored.completed_at is None:
                stored.completed_at = utcnow()
            return True

    async def find_by_id(self, execution_id: str) -> Optional[WorkflowExecution]:
        async with self._lock:
            stored = self._executions.get(execution_id)
            return stored.model_copy(deep=True) if stored else None

    async def list_by_workflow(
        self,
        workflow_id: str,
        organization_id: Optional[str] = None,
        page: int = 1,
        limit: int = 10,
        status: Optional[str] = None,
        sort_by: str = "started_at",
        sort_order: str = "desc",
    ) -> ExecutionPage:
        if sort_by not in SORTABLE_FIELDS:
            raise ValueError(f"Cannot sort by {sort_by}")
        async with self._lock:
            matches = [
                e for e in self._executions.values()
                if e.workflow_id == workflow_id
                and (organization_id is None or e.organization_id == organization_id)
                and (status is None or e.status == status)
            ]
        return self._page(matches, page, limit, sort_by, sort_order)

    async def list_by_organization(
        self,
        organization_id: str,
        page: int = 1,
        limit: int = 10,
        status: Optional[str] = None,
        workflow_id: Optional[str] = None,
    ) -> ExecutionPage:
        async with self._lock:
            matches = [
                e for e in self._executions.values()
                if e.organization_id == organization_id
                and (workflow_id is None or e.workflow_id == workflow_id)
                and (status is None or e.status == status)
            ]
        return self._page(matches, page, limit, "started_at", "desc")

    async def aggregate(
        self,
        workflow_id: str,
        organization_id: Optional[str] = None,
        period: str = "month",
    ) -> ExecutionAnalytics:
        since = period_start(period)
        async with self._lock:
            window = [
                e for e in self._executions.values()
                if e.workflow_id == workflow_id
                and (organization_id is None or e.organization_id == organization_id)
                and e.started_at >= since
            ]

        failed = sum(1 for e in window if e.status == ExecutionStatus.FAILED)
        durations = [e.duration for e in window if e.duration is not None]
        metrics = ExecutionMetrics(
            total_executions=len(window),
            successful_executions=sum(1 for e in window if e.status == ExecutionStatus.COMPLETED),
            failed_executions=failed,
            average_duration=sum(durations) / len(durations) if durations else 0.0,
            total_errors=failed,
        )
        return ExecutionAnalytics(workflow_id=workflow_id, period=period, since=since, metrics=metrics)

    def _page(
        self,
        executions: List[WorkflowExecution],
        page: int,
        limit: int,
        sort_by: str,
        sort_order: str,
    ) -> ExecutionPage:
        def sort_key(execution: WorkflowExecution):
            value = getattr(execution, sort_by)
            if sort_by == "status":
                value = status_value(value)
            # None sorts first ascending, last descending
            return (value is not None, value)

        ordered = sorted(executions, key=sort_key, reverse=(sort_order == "desc"))
        start = (page - 1) * limit
        return ExecutionPage(
            data=[to_summary(e) for e in ordered[start:start + limit]],
            pagination=build_pagination(page, limit, len(executions)),
        )
