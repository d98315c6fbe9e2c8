"""Best-effort fan-out of escalation requests to chat and mail channels.

Delivery never fails request creation: each channel reports a bool and
logs its own errors. dispatch() runs the fan-out on a background thread so
the caller returns as soon as the request is persisted.
"""

import logging
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor

import httpx

from mergeguard.core.config import NotificationConfig
from mergeguard.core.models import HITLReason, HITLRequest, NotificationResult

logger = logging.getLogger(__name__)

REASON_EMOJI: dict[HITLReason, str] = {
    HITLReason.SCHEMA_DESTRUCTIVE: "🗄️",
    HITLReason.DEPENDENCY_MAJOR: "📦",
    HITLReason.SECURITY_CHANGE: "🔒",
    HITLReason.DATA_DELETION: "🗑️",
    HITLReason.MERGE_CONFLICT: "⚔️",
    HITLReason.COST_THRESHOLD: "💰",
    HITLReason.LOOP_DETECTED: "🔄",
    HITLReason.TEST_FAILURE_AMBIGUOUS: "🧪",
    HITLReason.ARCHITECTURE_FORK: "🔀",
}

REASON_COLOR: dict[HITLReason, int] = {
    HITLReason.SCHEMA_DESTRUCTIVE: 0xFF0000,
    HITLReason.DEPENDENCY_MAJOR: 0xFFA500,
    HITLReason.SECURITY_CHANGE: 0xFF4500,
    HITLReason.DATA_DELETION: 0xFF0000,
    HITLReason.MERGE_CONFLICT: 0xFFFF00,
    HITLReason.COST_THRESHOLD: 0xFFD700,
    HITLReason.LOOP_DETECTED: 0x9932CC,
    HITLReason.TEST_FAILURE_AMBIGUOUS: 0x00BFFF,
    HITLReason.ARCHITECTURE_FORK: 0x32CD32,
}


def format_for_slack(request: HITLRequest) -> dict:
    """Slack Block Kit payload with approve/reject buttons."""
    blocks: list[dict] = [
        {
            "type": "header",
            "text": {
                "type": "plain_text",
                "text": f"{REASON_EMOJI.get(request.reason, '🚨')} HITL Request: {request.title}",
            },
        },
        {
            "type": "section",
            "fields": [
                {"type": "mrkdwn", "text": f"*ID:*\n`{request.id}`"},
                {"type": "mrkdwn", "text": f"*Reason:*\n{request.reason.value}"},
                {"type": "mrkdwn", "text": f"*Status:*\n{request.status.value}"},
                {"type": "mrkdwn", "text": f"*Created:*\n{request.created_at.isoformat()}"},
            ],
        },
        {
            "type": "section",
            "text": {"type": "mrkdwn", "text": f"*Description:*\n{request.description}"},
        },
    ]
    if request.context.files:
        files = "\n".join(f"• `{f}`" for f in request.context.files)
        blocks.append({"type": "section", "text": {"type": "mrkdwn", "text": f"*Files:*\n{files}"}})
    if request.context.options:
        options = "\n".join(f"• *{o.label}*: {o.description}" for o in request.context.options)
        blocks.append(
            {"type": "section", "text": {"type": "mrkdwn", "text": f"*Options:*\n{options}"}}
        )
    blocks.append(
        {
            "type": "actions",
            "elements": [
                {
                    "type": "button",
                    "text": {"type": "plain_text", "text": "✅ Approve"},
                    "style": "primary",
                    "action_id": f"hitl_approve_{request.id}",
                },
                {
                    "type": "button",
                    "text": {"type": "plain_text", "text": "❌ Reject"},
                    "style": "danger",
                    "action_id": f"hitl_reject_{request.id}",
                },
            ],
        }
    )
    return {"blocks": blocks}


def format_for_discord(request: HITLRequest) -> dict:
    """Discord embed payload."""
    fields: list[dict] = [
        {"name": "ID", "value": f"`{request.id}`", "inline": True},
        {"name": "Reason", "value": request.reason.value, "inline": True},
        {"name": "Status", "value": request.status.value, "inline": True},
        {"name": "Description", "value": request.description or "-"},
    ]
    if request.context.files:
        fields.append(
            {"name": "Files", "value": "\n".join(f"• `{f}`" for f in request.context.files)}
        )
    if request.context.options:
        fields.append(
            {
                "name": "Options",
                "value": "\n".join(
                    f"• **{o.label}**: {o.description}" for o in request.context.options
                ),
            }
        )
    return {
        "embeds": [
            {
                "title": f"🚨 HITL Request: {request.title}",
                "color": REASON_COLOR.get(request.reason, 0xFF0000),
                "fields": fields,
                "timestamp": request.created_at.isoformat(),
            }
        ]
    }


class NotificationDispatcher:
    """Posts escalation summaries to configured webhooks."""

    def __init__(
        self,
        config: NotificationConfig | None = None,
        client: httpx.Client | None = None,
        max_workers: int = 2,
    ):
        self.config = config or NotificationConfig().with_env_overrides()
        self._client = client
        self._executor: ThreadPoolExecutor | None = None
        self._max_workers = max_workers

    def _post(self, channel: str, url: str, payload: dict) -> bool:
        try:
            if self._client is not None:
                response = self._client.post(url, json=payload, timeout=self.config.timeout_seconds)
            else:
                with httpx.Client(timeout=self.config.timeout_seconds) as client:
                    response = client.post(url, json=payload)
        except httpx.HTTPError as e:
            logger.warning(f"Failed to send {channel} notification: {e}")
            return False
        if not response.is_success:
            logger.warning(f"{channel} webhook returned HTTP {response.status_code}")
            return False
        return True

    def send_slack(self, request: HITLRequest) -> bool:
        if not self.config.slack_webhook_url:
            logger.debug("Slack webhook not configured (set SLACK_WEBHOOK_URL)")
            return False
        payload = format_for_slack(request)
        if self.config.slack_channel:
            payload["channel"] = self.config.slack_channel
        return self._post("Slack", self.config.slack_webhook_url, payload)

    def send_discord(self, request: HITLRequest) -> bool:
        if not self.config.discord_webhook_url:
            logger.debug("Discord webhook not configured (set DISCORD_WEBHOOK_URL)")
            return False
        return self._post("Discord", self.config.discord_webhook_url, format_for_discord(request))

    def send_email(self, request: HITLRequest) -> bool:
        if not self.config.smtp_host:
            logger.debug("Email not configured (set SMTP_HOST)")
            return False
        # TODO: deliver over SMTP once a mail relay is provisioned for escalations
        logger.info(f"Email delivery for {request.id} is not implemented; skipping")
        return False

    def notify(self, request: HITLRequest) -> NotificationResult:
        """Send to every channel synchronously."""
        return NotificationResult(
            slack=self.send_slack(request),
            discord=self.send_discord(request),
            email=self.send_email(request),
        )

    def dispatch(
        self,
        request: HITLRequest,
        on_done: Callable[[NotificationResult], None] | None = None,
    ) -> Future[NotificationResult]:
        """Fire-and-forget fan-out on a worker thread."""
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=self._max_workers, thread_name_prefix="mergeguard-notify"
            )

        def run() -> NotificationResult:
            result = self.notify(request)
            if on_done is not None:
                try:
                    on_done(result)
                except Exception as e:
                    logger.warning(f"Recording notification result for {request.id} failed: {e}")
            return result

        return self._executor.submit(run)

    def shutdown(self, wait: bool = True) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=wait)
            self._executor = None
