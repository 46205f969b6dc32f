# notifications.py - Fire-and-forget chat notifications for portal activity
# Slack and Microsoft Teams incoming webhooks configured per organisation in
# Organisation.settings (slack_webhook_url / teams_webhook_url).
# Delivery runs as a detached asyncio task: callers never await it, failures
# are logged and never retried.

import os
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

import httpx

logger = logging.getLogger("launchpad.notify")

NOTIFY_TIMEOUT_SECONDS = float(os.getenv("NOTIFY_TIMEOUT_SECONDS", "10"))
APP_URL = os.getenv("APP_URL", "http://localhost:3000").rstrip("/")

# Only customer-side events reach chat channels
NOTIFIABLE_EVENTS = frozenset({
    "task.completed",
    "form.submitted",
    "form.answered",
    "file.uploaded",
})

# Strong references so pending deliveries are not garbage collected mid-flight
_pending: Set[asyncio.Task] = set()


@dataclass
class NotificationContext:
    space_id: str
    organisation_id: str
    space_name: str
    client_name: str
    actor_email: str
    action: str
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def actor_name(self) -> str:
        if self.actor_email == "anonymous":
            return "Anonymous"
        return self.actor_email.split("@")[0] if "@" in self.actor_email else self.actor_email

    @property
    def project_url(self) -> str:
        return f"{APP_URL}/spaces/{self.space_id}"


def describe(ctx: NotificationContext) -> str:
    """One-line human summary of an activity event."""
    meta = ctx.metadata or {}
    if ctx.action == "task.completed":
        title = meta.get("taskTitle") or meta.get("title") or "a task"
        text = f"{ctx.actor_name} completed \"{title}\""
    elif ctx.action in ("form.submitted", "form.answered"):
        title = meta.get("formTitle") or "a form"
        text = f"{ctx.actor_name} submitted \"{title}\""
    elif ctx.action == "file.uploaded":
        name = meta.get("fileName") or "a file"
        text = f"{ctx.actor_name} uploaded {name}"
    else:
        text = f"{ctx.actor_name} completed an action"
    project = ctx.space_name
    if ctx.client_name:
        project = f"{project} ({ctx.client_name})"
    return f"{text} in {project}"


def slack_payload(ctx: NotificationContext) -> Dict[str, Any]:
    summary = describe(ctx)
    return {
        "text": summary,
        "blocks": [
            {"type": "section", "text": {"type": "mrkdwn", "text": summary}},
            {
                "type": "context",
                "elements": [{"type": "mrkdwn", "text": f"<{ctx.project_url}|View project>"}],
            },
        ],
    }


def teams_payload(ctx: NotificationContext) -> Dict[str, Any]:
    return {
        "@type": "MessageCard",
        "@context": "https://schema.org/extensions",
        "summary": describe(ctx),
        "themeColor": "0076D7",
        "title": ctx.space_name,
        "text": describe(ctx),
        "potentialAction": [{
            "@type": "OpenUri",
            "name": "View project",
            "targets": [{"os": "default", "uri": ctx.project_url}],
        }],
    }


def webhook_targets(settings: Optional[Dict[str, Any]], action: str) -> List[tuple]:
    """(channel, url, payload builder) for each webhook enabled for ``action``."""
    settings = settings or {}
    enabled = settings.get("notify_events")
    if isinstance(enabled, list):
        # form.answered is the legacy tag of form.submitted
        wanted = {action, "form.answered"} if action == "form.submitted" else {action}
        if not wanted.intersection(enabled):
            return []
    targets = []
    if settings.get("slack_webhook_url"):
        targets.append(("slack", settings["slack_webhook_url"], slack_payload))
    if settings.get("teams_webhook_url"):
        targets.append(("teams", settings["teams_webhook_url"], teams_payload))
    return targets


async def _deliver(ctx: NotificationContext, targets: List[tuple]) -> None:
    async with httpx.AsyncClient(timeout=NOTIFY_TIMEOUT_SECONDS) as client:
        for channel, url, build in targets:
            try:
                resp = await client.post(url, json=build(ctx))
            except httpx.HTTPError as e:
                logger.warning(f"{channel} notification failed for space {ctx.space_id[:8]}: {e}")
                continue
            if resp.status_code >= 400:
                logger.warning(
                    f"{channel} webhook rejected {ctx.action} for space {ctx.space_id[:8]}: "
                    f"HTTP {resp.status_code}"
                )
            else:
                logger.info(f"{channel} notified: {ctx.action} on space {ctx.space_id[:8]}")


def _on_done(task: asyncio.Task) -> None:
    _pending.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error(f"Notification task crashed: {exc}", exc_info=exc)


def notify(ctx: NotificationContext, settings: Optional[Dict[str, Any]]) -> Optional[asyncio.Task]:
    """Schedule delivery without awaiting it. Returns the task, or None when nothing to send."""
    if ctx.action not in NOTIFIABLE_EVENTS:
        return None
    targets = webhook_targets(settings, ctx.action)
    if not targets:
        return None
    task = asyncio.create_task(_deliver(ctx, targets))
    _pending.add(task)
    task.add_done_callback(_on_done)
    return task


async def drain(timeout: float = 5.0) -> None:
    """Give in-flight deliveries a bounded chance to finish (used on shutdown)."""
    if not _pending:
        return
    _, pending = await asyncio.wait(set(_pending), timeout=timeout)
    for task in pending:
        task.cancel()
    if pending:
        logger.warning(f"Cancelled {len(pending)} notification(s) still pending at shutdown")
