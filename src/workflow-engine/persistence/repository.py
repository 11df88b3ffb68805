"""
Repository for stored workflow definitions.
"""

import logging
import json
import uuid
from typing import Optional, List, Dict
import asyncpg

from models.workflow import Workflow
from models.execution import utcnow

logger = logging.getLogger(__name__)


class WorkflowRepository:
    """
    Repository for workflow definitions in PostgreSQL.

    Definitions are stored so runs can be started (and retried) by
    workflow id; the graph itself is kept as one JSONB document.
    """

    def __init__(self, pool: asyncpg.Pool):
        """
        Initialize repository.

        Args:
            pool: Database connection pool
        """
        self.pool = pool

    async def init_tables(self):
        """Initialize database tables."""
        async with self.pool.acquire() as conn:
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS workflow_definitions (
                    id VARCHAR(64) PRIMARY KEY,
                    organization_id VARCHAR(255),
                    name VARCHAR(255) NOT NULL,
                    description TEXT,
                    version INTEGER DEFAULT 1,
                    graph JSONB NOT NULL,
                    created_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP
                )
            """)
            await conn.execute("CREATE INDEX IF NOT EXISTS idx_definitions_org ON workflow_definitions(organization_id)")

            logger.info("Workflow tables initialized")

    async def create_workflow(self, workflow: Workflow) -> str:
        """Create a new workflow definition."""
        workflow_id = workflow.id or str(uuid.uuid4())
        graph = workflow.model_dump(mode="json", include={"nodes", "edges", "settings"})

        async with self.pool.acquire() as conn:
            await conn.execute("""
                INSERT INTO workflow_definitions
                (id, organization_id, name, description, version, graph)
                VALUES ($1, $2, $3, $4, $5, $6)
            """,
                workflow_id,
                workflow.organization_id,
                workflow.name,
                workflow.description,
                workflow.version,
                json.dumps(graph),
            )
        return workflow_id

    async def get_workflow(self, workflow_id: str, organization_id: Optional[str] = None) -> Optional[Workflow]:
        """Get a workflow by ID, optionally scoped to an organization."""
        query = "SELECT * FROM workflow_definitions WHERE id = $1"
        params = [workflow_id]
        if organization_id:
            query += " AND organization_id = $2"
            params.append(organization_id)

        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(query, *params)
            if row:
                return self._row_to_workflow(row)
            return None

    async def list_workflows(self, organization_id: Optional[str] = None) -> List[Workflow]:
        """List workflows."""
        async with self.pool.acquire() as conn:
            if organization_id:
                rows = await conn.fetch(
                    "SELECT * FROM workflow_definitions WHERE organization_id = $1 ORDER BY name",
                    organization_id,
                )
            else:
                rows = await conn.fetch("SELECT * FROM workflow_definitions ORDER BY name")
            return [self._row_to_workflow(row) for row in rows]

    def _row_to_workflow(self, row) -> Workflow:
        """Convert database row to Workflow."""
        graph = row["graph"]
        if isinstance(graph, str):
            graph = json.loads(graph)

        return Workflow(
            id=row["id"],
            organization_id=row["organization_id"],
            name=row["name"],
            description=row["description"],
            version=row["version"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            **graph,
        )


class InMemoryWorkflowRepository:
    """Process-local workflow definitions, same interface as WorkflowRepository."""

    def __init__(self):
        self._workflows: Dict[str, Workflow] = {}

    async def init_tables(self):
        pass

    async def create_workflow(self, workflow: Workflow) -> str:
        workflow_id = workflow.id or str(uuid.uuid4())
        now = utcnow()
        self._workflows[workflow_id] = workflow.model_copy(
            update={"id": workflow_id, "created_at": now, "updated_at": now},
            deep=True,
        )
        return workflow_id

    async def get_workflow(self, workflow_id: str, organization_id: Optional[str] = None) -> Optional[Workflow]:
        workflow = self._workflows.get(workflow_id)
        if workflow is None:
            return None
        if organization_id and workflow.organization_id != organization_id:
            return None
        return workflow.model_copy(deep=True)

    async def list_workflows(self, organization_id: Optional[str] = None) -> List[Workflow]:
        workflows = [
            w for w in self._workflows.values()
            if not organization_id or w.organization_id == organization_id
        ]
        return sorted(workflows, key=lambda w: w.name)
