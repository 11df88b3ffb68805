"""
PostgreSQL execution store.
"""

import logging
import json
from typing import Optional, Sequence, Any
import asyncpg

from models.execution import (
    WorkflowExecution,
    ExecutionStatus,
    ExecutionPage,
    ExecutionAnalytics,
    ExecutionMetrics,
    ExecutionSummary,
    TERMINAL_STATUSES,
    status_value,
    utcnow,
)
from .store import ExecutionStore, SORTABLE_FIELDS, build_pagination, period_start

logger = logging.getLogger(__name__)


def _dumps(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, default=str)


def _loads(value: Any) -> Any:
    if isinstance(value, str):
        return json.loads(value)
    return value


class PostgresExecutionStore(ExecutionStore):
    """
    Execution store backed by PostgreSQL.

    A run is one row; node executions, trigger, error and metadata live in
    JSONB columns and are rewritten together on replace.
    """

    def __init__(self, pool: asyncpg.Pool):
        """
        Initialize store.

        Args:
            pool: Database connection pool
        """
        self.pool = pool

    async def init_tables(self):
        """Initialize database tables."""
        async with self.pool.acquire() as conn:
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS workflow_executions (
                    id VARCHAR(64) PRIMARY KEY,
                    workflow_id VARCHAR(255),
                    organization_id VARCHAR(255),
                    status VARCHAR(50) DEFAULT 'pending',
                    trigger JSONB,
                    input JSONB,
                    output JSONB,
                    node_executions JSONB,
                    error JSONB,
                    metadata JSONB,
                    duration INTEGER,
                    started_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP,
                    completed_at TIMESTAMPTZ,
                    updated_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP
                )
            """)

            await conn.execute("CREATE INDEX IF NOT EXISTS idx_executions_workflow ON workflow_executions(workflow_id, organization_id)")
            await conn.execute("CREATE INDEX IF NOT EXISTS idx_executions_org ON workflow_executions(organization_id)")
            await conn.execute("CREATE INDEX IF NOT EXISTS idx_executions_status ON workflow_executions(status)")
            await conn.execute("CREATE INDEX IF NOT EXISTS idx_executions_started ON workflow_executions(started_at)")

            logger.info("Execution tables initialized")

    def _columns(self, execution: WorkflowExecution) -> list:
        data = execution.model_dump(mode="json")
        return [
            execution.workflow_id,
            execution.organization_id,
            status_value(execution.status),
            _dumps(data["trigger"]),
            _dumps(data["input"]),
            _dumps(data["output"]),
            _dumps(data["node_executions"]),
            _dumps(data["error"]),
            _dumps(data["metadata"]),
            execution.duration,
            execution.started_at,
            execution.completed_at,
        ]

    async def create(self, execution: WorkflowExecution) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute("""
                INSERT INTO workflow_executions
                (workflow_id, organization_id, status, trigger, input, output,
                 node_executions, error, metadata, duration, started_at, completed_at, id)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13)
            """, *self._columns(execution), execution.id)

    async def replace(self, execution: WorkflowExecution) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute("""
                UPDATE workflow_executions
                SET workflow_id = $1, organization_id = $2, status = $3, trigger = $4,
                    input = $5, output = $6, node_executions = $7, error = $8,
                    metadata = $9, duration = $10, started_at = $11, completed_at = $12,
                    updated_at = CURRENT_TIMESTAMP
                WHERE id = $13
            """, *self._columns(execution), execution.id)

    async def patch_status(
        self,
        execution_id: str,
        status: ExecutionStatus,
        only_if: Optional[Sequence[ExecutionStatus]] = None,
    ) -> bool:
        updates = ["status = $1", "updated_at = CURRENT_TIMESTAMP"]
        params: list = [status_value(status)]
        param_idx = 2

        if status in TERMINAL_STATUSES:
            updates.append(f"completed_at = COALESCE(completed_at, ${param_idx})")
            params.append(utcnow())
            param_idx += 1

        query = f"UPDATE workflow_executions SET {', '.join(updates)} WHERE id = ${param_idx}"
        params.append(execution_id)
        param_idx += 1

        if only_if is not None:
            query += f" AND status = ANY(${param_idx}::text[])"
            params.append([status_value(s) for s in only_if])

        async with self.pool.acquire() as conn:
            result = await conn.execute(query, *params)
        # asyncpg returns the command tag, e.g. "UPDATE 1"
        return result.split()[-1] != "0"

    async def find_by_id(self, execution_id: str) -> Optional[WorkflowExecution]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM workflow_executions WHERE id = $1",
                execution_id
            )
            if row:
                return self._row_to_execution(row)
            return None

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
        direction = "DESC" if sort_order == "desc" else "ASC"
        return await self._list(
            workflow_id=workflow_id,
            organization_id=organization_id,
            status=status,
            page=page,
            limit=limit,
            order_by=f"{sort_by} {direction}",
        )

    async def list_by_organization(
        self,
        organization_id: str,
        page: int = 1,
        limit: int = 10,
        status: Optional[str] = None,
        workflow_id: Optional[str] = None,
    ) -> ExecutionPage:
        return await self._list(
            workflow_id=workflow_id,
            organization_id=organization_id,
            status=status,
            page=page,
            limit=limit,
            order_by="started_at DESC",
        )

    async def _list(
        self,
        workflow_id: Optional[str],
        organization_id: Optional[str],
        status: Optional[str],
        page: int,
        limit: int,
        order_by: str,
    ) -> ExecutionPage:
        where = "WHERE 1=1"
        params: list = []
        param_idx = 1

        if workflow_id:
            where += f" AND workflow_id = ${param_idx}"
            params.append(workflow_id)
            param_idx += 1

        if organization_id:
            where += f" AND organization_id = ${param_idx}"
            params.append(organization_id)
            param_idx += 1

        if status:
            where += f" AND status = ${param_idx}"
            params.append(status)
            param_idx += 1

        query = (
            "SELECT id, workflow_id, organization_id, status, trigger, duration, started_at, completed_at, "
            "jsonb_array_length(COALESCE(node_executions, '[]'::jsonb)) AS node_count "
            f"FROM workflow_executions {where} ORDER BY {order_by} "
            f"LIMIT ${param_idx} OFFSET ${param_idx + 1}"
        )

        async with self.pool.acquire() as conn:
            total = await conn.fetchval(f"SELECT COUNT(*) FROM workflow_executions {where}", *params)
            rows = await conn.fetch(query, *params, limit, (page - 1) * limit)

        summaries = []
        for row in rows:
            trigger = _loads(row["trigger"]) or {}
            summaries.append(ExecutionSummary(
                id=row["id"],
                workflow_id=row["workflow_id"],
                organization_id=row["organization_id"],
                status=row["status"],
                trigger_type=trigger.get("type"),
                node_count=row["node_count"] or 0,
                duration=row["duration"],
                started_at=row["started_at"],
                completed_at=row["completed_at"],
            ))

        return ExecutionPage(data=summaries, pagination=build_pagination(page, limit, total or 0))

    async def aggregate(
        self,
        workflow_id: str,
        organization_id: Optional[str] = None,
        period: str = "month",
    ) -> ExecutionAnalytics:
        since = period_start(period)
        query = """
            SELECT
                COUNT(*) AS total_executions,
                COUNT(*) FILTER (WHERE status = 'completed') AS successful_executions,
                COUNT(*) FILTER (WHERE status = 'failed') AS failed_executions,
                AVG(duration) AS average_duration
            FROM workflow_executions
            WHERE workflow_id = $1 AND started_at >= $2
        """
        params: list = [workflow_id, since]
        if organization_id:
            query += " AND organization_id = $3"
            params.append(organization_id)

        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(query, *params)

        failed = row["failed_executions"] or 0
        metrics = ExecutionMetrics(
            total_executions=row["total_executions"] or 0,
            successful_executions=row["successful_executions"] or 0,
            failed_executions=failed,
            average_duration=float(row["average_duration"]) if row["average_duration"] is not None else 0.0,
            total_errors=failed,
        )
        return ExecutionAnalytics(workflow_id=workflow_id, period=period, since=since, metrics=metrics)

    def _row_to_execution(self, row) -> WorkflowExecution:
        """Convert database row to WorkflowExecution."""
        return WorkflowExecution(
            id=row["id"],
            workflow_id=row["workflow_id"],
            organization_id=row["organization_id"],
            status=ExecutionStatus(row["status"]),
            trigger=_loads(row["trigger"]) or {},
            input=_loads(row["input"]) or {},
            output=_loads(row["output"]) or {},
            node_executions=_loads(row["node_executions"]) or [],
            error=_loads(row["error"]),
            metadata=_loads(row["metadata"]) or {},
            duration=row["duration"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
        )
