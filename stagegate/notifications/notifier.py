"""
Notification sinks for pipeline run events.

This module provides:
- Structured run events (build_started, build_failed, deploy_completed, ...)
- Message rendering from the run state
- Multiple sinks (log, Slack, webhooks, email)
- Best-effort delivery: sink failures are logged, never raised
"""

import json
import logging
import smtplib
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.request import Request, urlopen

from ..core.interfaces import PipelineRun, StageStatus


logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Notification event types."""
    BUILD_STARTED = "build_started"
    APPROVAL_REQUESTED = "approval_requested"
    BUILD_SUCCEEDED = "build_succeeded"
    BUILD_UNSTABLE = "build_unstable"
    BUILD_FAILED = "build_failed"
    BUILD_SUPERSEDED = "build_superseded"
    DEPLOY_COMPLETED = "deploy_completed"


TERMINAL_EVENTS = frozenset({
    EventType.BUILD_SUCCEEDED,
    EventType.BUILD_UNSTABLE,
    EventType.BUILD_FAILED,
    EventType.BUILD_SUPERSEDED,
    EventType.DEPLOY_COMPLETED,
})

_SEVERITIES = {
    EventType.BUILD_STARTED: "low",
    EventType.APPROVAL_REQUESTED: "medium",
    EventType.BUILD_SUCCEEDED: "low",
    EventType.DEPLOY_COMPLETED: "low",
    EventType.BUILD_UNSTABLE: "medium",
    EventType.BUILD_SUPERSEDED: "medium",
    EventType.BUILD_FAILED: "high",
}


@dataclass
class NotificationEvent:
    """A rendered notification about a pipeline run."""

    id: str
    event_type: EventType
    severity: str
    title: str
    message: str
    timestamp: datetime
    source: str
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "event_type": self.event_type.value,
            "severity": self.severity,
            "title": self.title,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
            "source": self.source,
            "metadata": self.metadata,
        }


def _logs_reference(run: PipelineRun) -> str:
    return run.logs_url or f"build #{run.build_number} console log"


def render_event(event_type: EventType, run: PipelineRun, source: str = "stagegate",
                 extra: Optional[Dict[str, Any]] = None) -> NotificationEvent:
    """Render the title and message body of an event for a run."""
    image = run.image or run.image_tag
    failed = [r for r in run.results if r.status is StageStatus.FAILED]
    lines: List[str] = []

    if event_type is EventType.BUILD_STARTED:
        title = f"Build {run.run_id} started"
        lines.append(f"Build started on {run.branch} ({run.event.value})")
    elif event_type is EventType.APPROVAL_REQUESTED:
        stage = (extra or {}).get("stage", "production")
        title = f"Approval required for {run.run_id}"
        lines.append(f"Stage '{stage}' is waiting for approval")
    elif event_type is EventType.DEPLOY_COMPLETED:
        title = f"Production deployment of {run.image_tag} completed"
        approver = run.approval.approver if run.approval else "unknown"
        lines.append(f"Image: {image}")
        lines.append(f"Deployed by: {approver}")
        strategy = run.parameters.get("deployment_strategy")
        if strategy:
            lines.append(f"Strategy: {strategy}")
    elif event_type is EventType.BUILD_SUCCEEDED:
        title = f"Build {run.run_id} succeeded"
        lines.append(f"Image: {image}")
    elif event_type is EventType.BUILD_UNSTABLE:
        title = f"Build {run.run_id} is unstable"
        lines.append("Failed stages: " + ", ".join(r.stage_name for r in failed))
    elif event_type is EventType.BUILD_SUPERSEDED:
        title = f"Build {run.run_id} superseded"
        lines.append("Cancelled by a newer run on the same branch")
    else:
        title = f"Build {run.run_id} failed"
        for result in failed:
            reason = f": {result.failure_reason}" if result.failure_reason else ""
            lines.append(f"Failed stage: {result.stage_name}{reason}")

    lines.append(f"Branch: {run.branch}")
    lines.append(f"Commit: {run.commit}")
    if event_type in (EventType.BUILD_FAILED, EventType.BUILD_UNSTABLE, EventType.BUILD_SUPERSEDED):
        lines.append(f"Logs: {_logs_reference(run)}")
    elif run.logs_url:
        lines.append(f"Logs: {run.logs_url}")

    metadata = {
        "run_id": run.run_id,
        "branch": run.branch,
        "commit": run.commit,
        "build_number": run.build_number,
        "image_tag": run.image_tag,
        "status": run.status.value,
        "logs": _logs_reference(run),
    }
    if run.approval and run.approval.approved:
        metadata["approver"] = run.approval.approver
    if extra:
        metadata.update(extra)

    return NotificationEvent(
        id=str(uuid.uuid4()),
        event_type=event_type,
        severity=_SEVERITIES[event_type],
        title=title,
        message="\n".join(lines),
        timestamp=datetime.now(),
        source=source,
        metadata=metadata,
    )


class NotificationSink(ABC):
    """Abstract base class for notification sinks."""

    def __init__(self, name: str, config: Dict[str, Any]):
        self.name = name
        self.config = config
        self.enabled = config.get('enabled', True)

    @abstractmethod
    def send_event(self, event: NotificationEvent) -> bool:
        """Deliver an event through this sink."""
        pass

    @abstractmethod
    def test_connection(self) -> bool:
        """Test if the sink is properly configured and reachable."""
        pass


class LogNotificationSink(NotificationSink):
    """Writes events to the application log."""

    def __init__(self, name: str, config: Dict[str, Any]):
        super().__init__(name, config)
        self.event_logger = logging.getLogger(config.get('logger', 'stagegate.notifications'))

    def send_event(self, event: NotificationEvent) -> bool:
        if not self.enabled:
            return False
        level = logging.ERROR if event.severity == "high" else logging.INFO
        self.event_logger.log(level, f"[{event.event_type.value}] {event.title}\n{event.message}")
        return True

    def test_connection(self) -> bool:
        return True


class SlackNotificationSink(NotificationSink):
    """Slack sink using incoming webhooks."""

    def __init__(self, name: str, config: Dict[str, Any]):
        super().__init__(name, config)
        self.webhook_url = config.get('webhook_url')
        self.channel = config.get('channel')
        self.username = config.get('username', 'Pipeline')
        self.timeout = config.get('timeout', 10)

    def send_event(self, event: NotificationEvent) -> bool:
        if not self.enabled or not self.webhook_url:
            return False

        try:
            payload = self._create_slack_payload(event)
            req = Request(
                self.webhook_url,
                data=json.dumps(payload).encode('utf-8'),
                headers={'Content-Type': 'application/json'}
            )

            with urlopen(req, timeout=self.timeout) as response:
                if response.status == 200:
                    logger.info(f"Slack notification sent to {self.channel or 'default channel'}")
                    return True
                logger.error(f"Slack notification failed with status {response.status}")
                return False

        except Exception as e:
            logger.error(f"Failed to send Slack notification: {e}")
            return False

    def test_connection(self) -> bool:
        if not self.webhook_url:
            return False

        try:
            req = Request(
                self.webhook_url,
                data=json.dumps({"text": "Pipeline notifications - connection test",
                                 "username": self.username}).encode('utf-8'),
                headers={'Content-Type': 'application/json'}
            )
            with urlopen(req, timeout=self.timeout) as response:
                return response.status == 200
        except Exception as e:
            logger.error(f"Slack connection test failed: {e}")
            return False

    def _create_slack_payload(self, event: NotificationEvent) -> Dict[str, Any]:
        colors = {'low': 'good', 'medium': 'warning', 'high': 'danger'}

        attachment = {
            "color": colors.get(event.severity, 'good'),
            "title": event.title,
            "text": event.message,
            "fields": [
                {"title": "Event", "value": event.event_type.value, "short": True},
                {"title": "Branch", "value": event.metadata.get("branch", ""), "short": True},
                {"title": "Build", "value": event.metadata.get("run_id", ""), "short": True},
                {"title": "Status", "value": event.metadata.get("status", ""), "short": True},
            ],
            "footer": event.source,
            "ts": int(event.timestamp.timestamp())
        }

        payload = {"username": self.username, "attachments": [attachment]}
        if self.channel:
            payload["channel"] = self.channel
        return payload


class WebhookNotificationSink(NotificationSink):
    """Generic JSON webhook sink."""

    def __init__(self, name: str, config: Dict[str, Any]):
        super().__init__(name, config)
        self.webhook_url = config.get('webhook_url')
        self.headers = config.get('headers', {})
        self.timeout = config.get('timeout', 30)

    def send_event(self, event: NotificationEvent) -> bool:
        if not self.enabled or not self.webhook_url:
            return False

        try:
            req = Request(
                self.webhook_url,
                data=json.dumps(event.to_dict()).encode('utf-8'),
                headers={**self.headers, 'Content-Type': 'application/json'}
            )

            with urlopen(req, timeout=self.timeout) as response:
                if 200 <= response.status < 300:
                    logger.info(f"Webhook notification sent to {self.webhook_url}")
                    return True
                logger.error(f"Webhook notification failed with status {response.status}")
                return False

        except Exception as e:
            logger.error(f"Failed to send webhook notification: {e}")
            return False

    def test_connection(self) -> bool:
        if not self.webhook_url:
            return False

        try:
            req = Request(
                self.webhook_url,
                data=json.dumps({"test": True, "message": "Connection test"}).encode('utf-8'),
                headers={**self.headers, 'Content-Type': 'application/json'}
            )
            with urlopen(req, timeout=self.timeout) as response:
                return 200 <= response.status < 300
        except Exception as e:
            logger.error(f"Webhook connection test failed: {e}")
            return False


class EmailNotificationSink(NotificationSink):
    """Email sink using SMTP."""

    def __init__(self, name: str, config: Dict[str, Any]):
        super().__init__(name, config)
        self.smtp_server = config.get('smtp_server', 'localhost')
        self.smtp_port = config.get('smtp_port', 587)
        self.username = config.get('username')
        self.password = config.get('password')
        self.from_email = config.get('from_email')
        self.to_emails = config.get('to_emails', [])
        self.use_tls = config.get('use_tls', True)

    def send_event(self, event: NotificationEvent) -> bool:
        if not self.enabled or not self.to_emails:
            return False

        try:
            msg = MIMEMultipart()
            msg['From'] = self.from_email
            msg['To'] = ', '.join(self.to_emails)
            msg['Subject'] = f"[{event.event_type.value}] {event.title}"
            msg.attach(MIMEText(event.message, 'plain'))

            with smtplib.SMTP(self.smtp_server, self.smtp_port) as server:
                if self.use_tls:
                    server.starttls()
                if self.username and self.password:
                    server.login(self.username, self.password)
                server.send_message(msg)

            logger.info(f"Email notification sent to {self.to_emails}")
            return True

        except Exception as e:
            logger.error(f"Failed to send email notification: {e}")
            return False

    def test_connection(self) -> bool:
        try:
            with smtplib.SMTP(self.smtp_server, self.smtp_port) as server:
                if self.use_tls:
                    server.starttls()
                if self.username and self.password:
                    server.login(self.username, self.password)
            return True
        except Exception as e:
            logger.error(f"Email connection test failed: {e}")
            return False


class NotificationManager:
    """
    Renders run events and routes them to sinks.

    Features:
    - Optional event filter
    - Best-effort delivery to every enabled sink
    - Event history with optional JSON persistence
    """

    def __init__(
        self,
        sinks: Optional[Dict[str, NotificationSink]] = None,
        events: Optional[List[str]] = None,
        history_file: Optional[str] = None,
        max_history_size: int = 1000,
        source: str = "stagegate",
    ):
        self.sinks = sinks or {}
        self.events = set(events) if events else None
        self.history_file = history_file
        self.max_history_size = max_history_size
        self.source = source
        self.history: List[NotificationEvent] = []
        self._lock = threading.Lock()

    def add_sink(self, sink: NotificationSink) -> None:
        self.sinks[sink.name] = sink
        logger.info(f"Added notification sink: {sink.name}")

    def notify(self, event_type: EventType, run: PipelineRun,
               extra: Optional[Dict[str, Any]] = None) -> Optional[NotificationEvent]:
        """Render and deliver an event. Never raises."""
        try:
            event = render_event(event_type, run, source=self.source, extra=extra)
        except Exception as e:
            logger.error(f"Failed to render {event_type.value} notification for {run.run_id}: {e}")
            return None

        with self._lock:
            self.history.append(event)
            if len(self.history) > self.max_history_size:
                self.history = self.history[-self.max_history_size:]

        if self.events is None or event_type.value in self.events:
            self._dispatch(event)
        else:
            logger.debug(f"Event {event_type.value} filtered out")

        if self.history_file:
            self._save_history()

        return event

    def _dispatch(self, event: NotificationEvent) -> None:
        for name, sink in self.sinks.items():
            if not sink.enabled:
                continue
            try:
                if sink.send_event(event):
                    logger.debug(f"Notification {event.id} delivered via {name}")
                else:
                    logger.error(f"Failed to deliver notification via {name}")
            except Exception as e:
                logger.error(f"Error delivering notification via {name}: {e}")

    def get_history(self, run_id: Optional[str] = None,
                    event_type: Optional[EventType] = None) -> List[NotificationEvent]:
        with self._lock:
            events = list(self.history)
        if run_id:
            events = [e for e in events if e.metadata.get("run_id") == run_id]
        if event_type:
            events = [e for e in events if e.event_type is event_type]
        return events

    def test_sinks(self) -> Dict[str, bool]:
        results = {}
        for name, sink in self.sinks.items():
            try:
                results[name] = sink.test_connection()
            except Exception as e:
                logger.error(f"Error testing sink {name}: {e}")
                results[name] = False
        return results

    def _save_history(self) -> None:
        try:
            with self._lock:
                history_data = [event.to_dict() for event in self.history]

            history_path = Path(self.history_file)
            history_path.parent.mkdir(parents=True, exist_ok=True)
            with open(history_path, 'w') as f:
                json.dump(history_data, f, indent=2)
        except OSError as e:
            logger.error(f"Failed to save notification history: {e}")
