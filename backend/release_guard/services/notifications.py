from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import json
import logging
import queue
import threading
from typing import Any, Protocol
from urllib.request import Request, urlopen

from release_guard.core.config import Settings
from release_guard.domain.deployment_record import DeploymentRecord
from release_guard.domain.deployment_state_machine import DeploymentEvent, DeploymentStatus
from release_guard.services.observability import emit_structured_log

ALERT_SEVERITIES = {"info", "warning", "error"}
SLACK_COLORS = {"info": "good", "warning": "warning", "error": "danger"}


@dataclass(frozen=True)
class Notification:
    kind: str
    severity: str
    title: str
    body: str
    deployment_id: str | None = None
    event: str | None = None


class NotificationChannel(Protocol):
    name: str

    def send(self, notification: Notification) -> None: ...


def _post_json(url: str, payload: dict[str, Any], timeout_seconds: float) -> None:
    body = json.dumps(payload).encode("utf-8")
    request = Request(url, data=body, method="POST", headers={"Content-Type": "application/json"})
    with urlopen(request, timeout=timeout_seconds) as response:
        status_code = int(response.status)
    if not 200 <= status_code < 300:
        raise RuntimeError(f"notification_http_status:{status_code}")


class LogChannel:
    name = "log"

    def send(self, notification: Notification) -> None:
        emit_structured_log(
            component="notifications",
            event="notification_sent",
            level=logging.ERROR if notification.severity == "error" else logging.INFO,
            deployment_id=notification.deployment_id,
            kind=notification.kind,
            severity=notification.severity,
            title=notification.title,
            lifecycle_event=notification.event,
        )


class SlackWebhookChannel:
    name = "slack"

    def __init__(self, webhook_url: str, timeout_seconds: float = 10.0) -> None:
        self.webhook_url = webhook_url
        self.timeout_seconds = timeout_seconds

    def send(self, notification: Notification) -> None:
        payload = {
            "attachments": [
                {
                    "color": SLACK_COLORS.get(notification.severity, "good"),
                    "title": notification.title,
                    "text": notification.body,
                    "footer": "Release Guard",
                    "ts": int(datetime.now(timezone.utc).timestamp()),
                }
            ]
        }
        _post_json(self.webhook_url, payload, self.timeout_seconds)


class DiscordWebhookChannel:
    name = "discord"

    def __init__(self, webhook_url: str, timeout_seconds: float = 10.0) -> None:
        self.webhook_url = webhook_url
        self.timeout_seconds = timeout_seconds

    def send(self, notification: Notification) -> None:
        payload = {
            "embeds": [
                {
                    "title": notification.title,
                    "description": notification.body,
                    "timestamp": datetime.now(timezone.utc).isoformat(),
                }
            ]
        }
        _post_json(self.webhook_url, payload, self.timeout_seconds)


class TelegramChannel:
    name = "telegram"

    def __init__(self, bot_token: str, chat_id: str, timeout_seconds: float = 10.0) -> None:
        self.bot_token = bot_token
        self.chat_id = chat_id
        self.timeout_seconds = timeout_seconds

    def send(self, notification: Notification) -> None:
        url = f"https://api.telegram.org/bot{self.bot_token}/sendMessage"
        payload = {"chat_id": self.chat_id, "text": f"{notification.title}\n\n{notification.body}"}
        _post_json(url, payload, self.timeout_seconds)


def format_deployment_message(record: DeploymentRecord, event: DeploymentEvent) -> str:
    health = "passed" if record.health_check_passed else "not passed"
    lines = [
        f"Deployment {event.value.upper()}",
        f"- ID: {record.id}",
        f"- Revision: {record.revision}",
        f"- Ref: {record.ref}",
        f"- Initiated by: {record.initiated_by}",
        f"- Created at: {record.created_at.isoformat()}",
        f"- Status: {record.status.value}",
        f"- Health check: {health}",
    ]
    return "\n".join(lines)


class NotificationFanout:
    """Best-effort broadcast of lifecycle events.

    Producers only enqueue; a single daemon worker drains the queue and
    delivers to every channel. Channel errors are logged and counted and
    never reach the caller.
    """

    def __init__(
        self,
        channels: list[NotificationChannel],
        *,
        queue_size: int = 256,
        start_worker: bool = True,
    ) -> None:
        self.channels = list(channels)
        self._queue: queue.Queue[Notification | None] = queue.Queue(maxsize=max(1, queue_size))
        self._stats_lock = threading.Lock()
        self._stats = {"enqueued": 0, "delivered": 0, "failed": 0, "dropped": 0}
        self._worker: threading.Thread | None = None
        if start_worker:
            self._worker = threading.Thread(target=self._run, name="notification-fanout", daemon=True)
            self._worker.start()

    def notify_deployment(self, record: DeploymentRecord, event: DeploymentEvent) -> None:
        severity = "error" if record.status == DeploymentStatus.FAILED or event == DeploymentEvent.FAILED else "info"
        self._enqueue(
            Notification(
                kind="deployment",
                severity=severity,
                title=f"Deployment {event.value}",
                body=format_deployment_message(record, event),
                deployment_id=record.id,
                event=event.value,
            )
        )

    def notify_alert(self, severity: str, title: str, message: str) -> None:
        normalized = severity if severity in ALERT_SEVERITIES else "error"
        self._enqueue(Notification(kind="alert", severity=normalized, title=title, body=message))

    def drain(self) -> int:
        """Deliver everything queued on the calling thread; returns the number processed."""
        processed = 0
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                return processed
            try:
                if item is not None:
                    self._deliver(item)
                    processed += 1
            finally:
                self._queue.task_done()

    def close(self, timeout_seconds: float = 5.0) -> None:
        if self._worker is None:
            return
        self._queue.put(None)
        self._worker.join(timeout_seconds)
        self._worker = None

    def stats(self) -> dict[str, int]:
        with self._stats_lock:
            return dict(self._stats)

    def _bump(self, key: str) -> None:
        with self._stats_lock:
            self._stats[key] += 1

    def _enqueue(self, notification: Notification) -> None:
        try:
            self._queue.put_nowait(notification)
        except queue.Full:
            self._bump("dropped")
            emit_structured_log(
                component="notifications",
                event="notification_dropped",
                level=logging.WARNING,
                deployment_id=notification.deployment_id,
                title=notification.title,
            )
            return
        self._bump("enqueued")

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is None:
                    return
                self._deliver(item)
            finally:
                self._queue.task_done()

    def _deliver(self, notification: Notification) -> None:
        for channel in self.channels:
            try:
                channel.send(notification)
            except Exception as exc:
                self._bump("failed")
                emit_structured_log(
                    component="notifications",
                    event="notification_failed",
                    level=logging.WARNING,
                    deployment_id=notification.deployment_id,
                    channel=channel.name,
                    title=notification.title,
                    error=str(exc),
                )
            else:
                self._bump("delivered")


def build_channels(settings: Settings) -> list[NotificationChannel]:
    channels: list[NotificationChannel] = [LogChannel()]
    timeout = settings.notification_timeout_seconds
    if settings.slack_enabled and settings.slack_webhook_url:
        channels.append(SlackWebhookChannel(settings.slack_webhook_url, timeout))
    if settings.discord_enabled and settings.discord_webhook_url:
        channels.append(DiscordWebhookChannel(settings.discord_webhook_url, timeout))
    if settings.telegram_enabled and settings.telegram_bot_token and settings.telegram_chat_id:
        channels.append(TelegramChannel(settings.telegram_bot_token, settings.telegram_chat_id, timeout))
    return channels
