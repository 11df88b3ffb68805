"""
In-process broker for approval decisions.
"""

import asyncio
import logging
from typing import Dict, List, Optional, Tuple

from models.execution import ApprovalDecision

logger = logging.getLogger(__name__)

ApprovalKey = Tuple[str, str]


class ApprovalBroker:
    """
    Parks approval nodes until a decision arrives.

    Keyed by (execution_id, node_id). A decision submitted before the node
    starts waiting is kept and consumed when it does; decisions never
    consumed are dropped with discard() when the run finishes.
    """

    def __init__(self):
        self._waiters: Dict[ApprovalKey, asyncio.Future] = {}
        self._early: Dict[ApprovalKey, ApprovalDecision] = {}

    async def wait(self, execution_id: str, node_id: str, timeout: float) -> ApprovalDecision:
        """
        Wait for a decision.

        Args:
            execution_id: Run the approval node belongs to
            node_id: Approval node id
            timeout: Seconds to wait

        Returns:
            The submitted decision

        Raises:
            asyncio.TimeoutError: If no decision arrives in time
        """
        key = (execution_id, node_id)
        if key in self._early:
            return self._early.pop(key)

        future = asyncio.get_running_loop().create_future()
        self._waiters[key] = future
        logger.info(f"Waiting for approval of node {node_id} in execution {execution_id}")
        try:
            return await asyncio.wait_for(future, timeout=timeout)
        finally:
            self._waiters.pop(key, None)

    def resolve(self, execution_id: str, node_id: str, decision: ApprovalDecision) -> bool:
        """
        Submit a decision.

        Returns:
            True if a node was waiting for it, False if it was stored for later
        """
        key = (execution_id, node_id)
        future = self._waiters.get(key)
        if future is not None and not future.done():
            future.set_result(decision)
            return True
        self._early[key] = decision
        return False

    def discard(self, execution_id: str) -> int:
        """Drop undelivered decisions of a finished run; returns how many."""
        stale = [key for key in self._early if key[0] == execution_id]
        for key in stale:
            del self._early[key]
        if stale:
            logger.info(f"Discarded {len(stale)} unused approval decision(s) for execution {execution_id}")
        return len(stale)

    def pending(self, execution_id: Optional[str] = None) -> List[ApprovalKey]:
        """Approvals currently waiting, optionally for one run."""
        return [
            key for key in self._waiters
            if execution_id is None or key[0] == execution_id
        ]
