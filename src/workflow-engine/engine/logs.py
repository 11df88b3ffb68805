"""
Flattened audit log of a run.
"""

from typing import List

from models.execution import WorkflowExecution, ExecutionLog, ExecutionStatus, status_value


def collect_execution_logs(execution: WorkflowExecution) -> List[ExecutionLog]:
    """
    Merge run-level, node-level and handler log entries into one timeline.

    Args:
        execution: Run to describe

    Returns:
        Log entries sorted by timestamp
    """
    logs: List[ExecutionLog] = [
        ExecutionLog(
            timestamp=execution.started_at,
            level="info",
            message="Execution started",
            data={"executionId": execution.id, "workflowId": execution.workflow_id},
        )
    ]

    if execution.completed_at:
        status = status_value(execution.status)
        logs.append(ExecutionLog(
            timestamp=execution.completed_at,
            level="info" if execution.status == ExecutionStatus.COMPLETED else "error",
            message=f"Execution {status}",
            data={
                "executionId": execution.id,
                "duration": execution.duration,
                "error": execution.error.model_dump() if execution.error else None,
            },
        ))

    for node_execution in execution.node_executions:
        logs.append(ExecutionLog(
            timestamp=node_execution.started_at,
            level="info",
            message=f"Node execution started: {node_execution.node_id}",
            data={"nodeId": node_execution.node_id},
        ))

        if node_execution.completed_at:
            logs.append(ExecutionLog(
                timestamp=node_execution.completed_at,
                level="info" if node_execution.status == ExecutionStatus.COMPLETED else "error",
                message=f"Node execution {status_value(node_execution.status)}: {node_execution.node_id}",
                data={
                    "nodeId": node_execution.node_id,
                    "duration": node_execution.duration,
                    "error": node_execution.error.model_dump() if node_execution.error else None,
                },
            ))

        logs.extend(node_execution.logs)

    # Stable sort keeps start-before-finish order for equal timestamps
    return sorted(logs, key=lambda entry: entry.timestamp)
