"""
Messaging node handlers: email, notification and approval.
"""

import asyncio
import logging
from email.message import EmailMessage
from typing import Any, Dict, Mapping, Optional

import aiosmtplib
import httpx

from models.workflow import Node, NodeType
from models.execution import ExecutionEvent, ExecutionStatus
from engine.approvals import ApprovalBroker
from engine.broadcaster import ProgressBroadcaster, NullBroadcaster
from engine.errors import (
    HandlerError,
    EmailError,
    ApprovalRejectedError,
    ApprovalTimeoutError,
)
from .base import NodeHandler

logger = logging.getLogger(__name__)


class EmailHandler(NodeHandler):
    """
    Sends an email over SMTP.

    When no SMTP host is configured the message is logged and skipped, and
    the node reports email_sent=False instead of failing.
    """

    def __init__(
        self,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        username: Optional[str] = None,
        password: Optional[str] = None,
        sender: str = "workflows@localhost",
        start_tls: bool = True,
    ):
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.username = username
        self.password = password
        self.sender = sender
        self.start_tls = start_tls

    @property
    def node_type(self) -> str:
        return NodeType.EMAIL.value

    async def handle(self, node: Node, context: Mapping[str, Any], execution_id: str) -> Dict[str, Any]:
        recipient = node.config.get("recipient") or context.get("recipient")
        subject = node.config.get("subject", f"Workflow notification ({execution_id})")
        body = node.config.get("body", "")

        if not self.smtp_host:
            logger.info(f"SMTP not configured, skipping email to {recipient} for execution {execution_id}")
            return {"email_sent": False, "recipient": recipient}
        if not recipient:
            raise EmailError("Email node has no recipient", details={"nodeId": node.id})

        message = EmailMessage()
        message["From"] = node.config.get("sender", self.sender)
        message["To"] = recipient
        message["Subject"] = subject
        message.set_content(body)

        try:
            await aiosmtplib.send(
                message,
                hostname=self.smtp_host,
                port=self.smtp_port,
                username=self.username,
                password=self.password,
                start_tls=self.start_tls,
            )
        except (aiosmtplib.SMTPException, OSError) as e:
            raise EmailError(f"Failed to send email: {e}", details={"recipient": recipient}) from e

        logger.info(f"Sent email to {recipient} for execution {execution_id}")
        return {"email_sent": True, "recipient": recipient, "subject": subject}


class NotificationHandler(NodeHandler):
    """
    Delivers a notification.

    Posts to config["webhook_url"] when set, otherwise publishes a
    notification event to the run's subscribers.
    """

    def __init__(
        self,
        broadcaster: Optional[ProgressBroadcaster] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
    ):
        self.broadcaster = broadcaster or NullBroadcaster()
        self.http_client = http_client
        self.timeout = timeout

    @property
    def node_type(self) -> str:
        return NodeType.NOTIFICATION.value

    async def handle(self, node: Node, context: Mapping[str, Any], execution_id: str) -> Dict[str, Any]:
        message = node.config.get("message", f"Notification from node {node.id}")
        payload = {
            "execution_id": execution_id,
            "node_id": node.id,
            "message": message,
            "channel": node.config.get("channel", "broadcast"),
        }

        webhook_url = node.config.get("webhook_url")
        if webhook_url:
            response = await self._post(webhook_url, payload)
            if response.status_code >= 400:
                raise HandlerError(
                    f"Notification webhook returned {response.status_code}",
                    details={"url": webhook_url, "status": response.status_code},
                )
            return {"notification_sent": True, "channel": "webhook"}

        await self.broadcaster.publish(
            execution_id,
            ExecutionEvent(
                type="notification",
                execution_id=execution_id,
                status=ExecutionStatus.RUNNING.value,
                node_id=node.id,
                data=payload,
            ),
        )
        return {"notification_sent": True, "channel": payload["channel"]}

    async def _post(self, url: str, payload: Dict[str, Any]) -> httpx.Response:
        try:
            if self.http_client is not None:
                return await self.http_client.post(url, json=payload, timeout=self.timeout)
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                return await client.post(url, json=payload)
        except httpx.HTTPError as e:
            raise HandlerError(f"Notification webhook failed: {e}", details={"url": url}) from e


class ApprovalHandler(NodeHandler):
    """
    Human approval gate.

    Auto-approves unless config["require_decision"] is set; then waits on the
    approval broker until a decision is submitted or the wait times out.
    """

    def __init__(self, broker: Optional[ApprovalBroker] = None, timeout_seconds: float = 3600):
        self.broker = broker or ApprovalBroker()
        self.timeout_seconds = timeout_seconds

    @property
    def node_type(self) -> str:
        return NodeType.APPROVAL.value

    async def handle(self, node: Node, context: Mapping[str, Any], execution_id: str) -> Dict[str, Any]:
        if not node.config.get("require_decision"):
            return {"approved": True, "approver": node.config.get("approver", "system")}

        timeout = float(node.config.get("timeout_seconds", self.timeout_seconds))
        try:
            decision = await self.broker.wait(execution_id, node.id, timeout)
        except asyncio.TimeoutError as e:
            raise ApprovalTimeoutError(
                f"No approval decision within {timeout}s",
                details={"timeoutSeconds": timeout},
            ) from e

        if not decision.approved:
            raise ApprovalRejectedError(
                f"Rejected by {decision.approver or 'unknown approver'}",
                details={"approver": decision.approver, "comment": decision.comment},
            )

        return {"approved": True, "approver": decision.approver, "comment": decision.comment}
