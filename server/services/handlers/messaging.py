"""Messaging node handlers - Email (SMTP) and Slack."""

import asyncio
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Dict, List, Optional, TYPE_CHECKING, Union

import httpx

from core.logging import get_logger
from models.nodes import BaseNodeConfig
from services.execution.errors import HTTP_ERROR, INVALID_CONFIG, NETWORK_ERROR, NODE_TIMEOUT
from services.execution.models import NodeResult
from .base import NodeContext, NodeHandler

if TYPE_CHECKING:
    from core.config import Settings

logger = get_logger(__name__)


def _recipients(value: Union[str, List[str], None]) -> List[str]:
    if not value:
        return []
    if isinstance(value, str):
        value = value.replace(";", ",").split(",")
    return [address.strip() for address in value if address and address.strip()]


class SmtpMailer:
    """Sends a MIME message through the configured SMTP relay."""

    def __init__(self, settings: "Settings"):
        self.settings = settings

    @property
    def configured(self) -> bool:
        return bool(self.settings.smtp_host)

    def _send(self, message: MIMEMultipart, recipients: List[str]) -> None:
        server = smtplib.SMTP(self.settings.smtp_host, self.settings.smtp_port, timeout=30)
        try:
            if self.settings.smtp_use_tls:
                server.starttls()
            if self.settings.smtp_user:
                server.login(self.settings.smtp_user, self.settings.smtp_password or "")
            server.send_message(message, to_addrs=recipients)
        finally:
            server.quit()

    async def send(self, message: MIMEMultipart, recipients: List[str]) -> None:
        await asyncio.to_thread(self._send, message, recipients)


class EmailSendHandler(NodeHandler):
    node_type = "email-send"
    required_fields = ("to", "subject")

    def __init__(self, settings: "Settings", mailer: Optional[Any] = None):
        self.settings = settings
        self.mailer = mailer or SmtpMailer(settings)

    def _build_message(self, config: BaseNodeConfig, sender: str, to: List[str], cc: List[str]) -> MIMEMultipart:
        message = MIMEMultipart("alternative")
        message["From"] = sender
        message["To"] = ", ".join(to)
        if cc:
            message["Cc"] = ", ".join(cc)
        if config.reply_to:
            message["Reply-To"] = config.reply_to
        message["Subject"] = config.subject or ""
        message.attach(MIMEText(config.body or "", "plain"))
        if config.html:
            message.attach(MIMEText(config.html, "html"))
        return message

    async def execute(self, ctx: NodeContext, config: BaseNodeConfig) -> NodeResult:
        if not getattr(self.mailer, "configured", True):
            return NodeResult.fail(INVALID_CONFIG, "SMTP is not configured")

        to = _recipients(config.to)
        cc = _recipients(config.cc)
        invalid = [address for address in to + cc if "@" not in address]
        if not to or invalid:
            return NodeResult.fail(INVALID_CONFIG, f"Invalid recipient(s): {', '.join(invalid) or 'none'}")

        sender = config.from_email or self.settings.smtp_from_email or self.settings.smtp_user or ""
        message = self._build_message(config, sender, to, cc)

        try:
            await self.mailer.send(message, to + cc)
        except smtplib.SMTPRecipientsRefused as e:
            return NodeResult.fail(INVALID_CONFIG, f"Recipients refused: {list(e.recipients)}")
        except smtplib.SMTPAuthenticationError:
            return NodeResult.fail(INVALID_CONFIG, "SMTP authentication failed")
        except (smtplib.SMTPException, OSError) as e:
            logger.warning("Email send failed", node_id=ctx.node_id, error=str(e))
            return NodeResult.fail(NETWORK_ERROR, f"Email send failed: {type(e).__name__}", retryable=True)

        logger.info("Email sent", node_id=ctx.node_id, recipients=len(to) + len(cc))
        return NodeResult(output={"sent": True, "to": to, "cc": cc, "subject": config.subject})


class SlackMessageHandler(NodeHandler):
    """Posts to a Slack incoming webhook."""

    node_type = "slack-message"
    required_fields = ("text",)

    def __init__(self, settings: "Settings", transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = settings
        self.transport = transport

    async def execute(self, ctx: NodeContext, config: BaseNodeConfig) -> NodeResult:
        webhook_url = config.webhook_url or self.settings.slack_webhook_url
        if not webhook_url:
            return NodeResult.fail(INVALID_CONFIG, "No Slack webhook URL configured")

        body: Dict[str, Any] = {"text": config.text}
        if config.channel:
            body["channel"] = config.channel
        if config.blocks:
            body["blocks"] = config.blocks

        timeout = ctx.node.timeout or self.settings.http_timeout
        try:
            async with httpx.AsyncClient(timeout=timeout, transport=self.transport) as client:
                response = await client.post(webhook_url, json=body)
        except httpx.TimeoutException:
            return NodeResult.fail(NODE_TIMEOUT, "Slack request timed out", retryable=True)
        except httpx.RequestError as e:
            return NodeResult.fail(NETWORK_ERROR, f"Slack request failed: {type(e).__name__}", retryable=True)

        if response.status_code >= 400:
            retryable = response.status_code == 429 or response.status_code >= 500
            return NodeResult.fail(HTTP_ERROR, f"Slack returned HTTP {response.status_code}", retryable)

        logger.info("Slack message sent", node_id=ctx.node_id)
        return NodeResult(output={"sent": True, "channel": config.channel, "text": config.text})
