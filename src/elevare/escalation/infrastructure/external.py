"""
Escalation External Service Integrations
=========================================

External services for the escalation engine:
- Slack webhook notifications
- YAML config file watcher
- APScheduler for periodic sweeps
"""

import asyncio
import threading
import time
from pathlib import Path
from typing import Optional, Dict, Any, Callable, Awaitable
from dataclasses import dataclass

import yaml
import httpx
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from pydantic import ValidationError
from watchdog.observers import Observer
from watchdog.events import FileSystemEventHandler

from elevare.config import settings
from elevare.core import ConfigurationException
from elevare.escalation.application import IEscalationConfigProvider
from elevare.escalation.domain import EscalationConfig
from elevare.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


class ConfigFileHandler(FileSystemEventHandler):
    """Watchdog event handler for escalation config file changes."""

    def __init__(self, config_manager: "EscalationConfigManager", config_path: Path):
        self.config_manager = config_manager
        self.config_path = config_path
        super().__init__()

    def _matches(self, event) -> bool:
        if event.is_directory:
            return False
        return Path(event.src_path).resolve() == self.config_path.resolve()

    def on_modified(self, event):
        if self._matches(event):
            logger.info("Escalation config file changed", extra={"path": event.src_path})
            self.config_manager.reload()

    # Editors that save by rename show up as a create
    on_created = on_modified


class EscalationConfigManager(IEscalationConfigProvider):
    """
    Thread-safe escalation configuration manager with hot-reload support.

    Uses watchdog to monitor file changes and reload the role directory,
    channels and snapshot sources without restarting the service. A bad
    edit is logged and the previous configuration stays in effect.
    """

    def __init__(self, config: Optional[EscalationConfig] = None):
        self._config: Optional[EscalationConfig] = config
        self._lock = threading.Lock()
        self._path: Optional[Path] = None
        self._observer = None

    def load(self, path: Path) -> EscalationConfig:
        """
        Initial configuration load.

        Raises:
            ConfigurationException: the file exists but is invalid
        """
        self._path = Path(path)
        try:
            config = self._load_from_file(self._path)
        except (yaml.YAMLError, ValidationError, OSError) as e:
            raise ConfigurationException(
                f"Invalid escalation config {self._path}: {e}",
                details={"path": str(self._path)}
            ) from e
        with self._lock:
            self._config = config
        return config

    def _load_from_file(self, path: Path) -> EscalationConfig:
        """Load and parse YAML config file."""
        if not path.exists():
            logger.warning("Escalation config file not found, using defaults", extra={"path": str(path)})
            return EscalationConfig()

        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}

        return EscalationConfig(**data)

    def reload(self) -> bool:
        """Reload configuration from file."""
        if self._path is None:
            return False

        try:
            new_config = self._load_from_file(self._path)
        except (yaml.YAMLError, ValidationError, OSError) as e:
            logger.error(
                "Failed to reload escalation config, keeping previous",
                extra={"path": str(self._path), "error": str(e)}
            )
            return False

        with self._lock:
            self._config = new_config
        logger.info("Escalation configuration reloaded successfully")
        return True

    def start_watching(self) -> None:
        """
        Start watching the configuration file for changes.

        Skips watching when the file does not exist or the platform does
        not support file notifications (some containers).
        """
        if self._path is None:
            raise RuntimeError("Config not loaded. Call load() first.")

        if not self._path.exists():
            logger.info(
                "Escalation config file doesn't exist, skipping file watch",
                extra={"path": str(self._path)}
            )
            return

        try:
            self._observer = Observer()
            handler = ConfigFileHandler(self, self._path)
            self._observer.schedule(handler, str(self._path.parent.resolve()), recursive=False)
            self._observer.start()
            logger.info("Started watching escalation config file", extra={"path": str(self._path)})
        except OSError as e:
            logger.warning("File watching not available, using static config", extra={"error": str(e)})
            self._observer = None

    def stop_watching(self) -> None:
        """Stop watching configuration file (safe to call even if not watching)."""
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._observer = None

    @property
    def config(self) -> EscalationConfig:
        """Get current configuration."""
        with self._lock:
            if self._config is None:
                raise RuntimeError("Escalation configuration not loaded")
            return self._config

    def get_config(self) -> EscalationConfig:
        return self.config


class CircuitState:
    """Circuit breaker states."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Circuit breaker for preventing cascade failures.

    States:
    - CLOSED: Normal operation, requests pass through
    - OPEN: After N failures, reject all requests for M seconds
    - HALF_OPEN: After timeout, allow one test request
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0
    ):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time: Optional[float] = None

    @property
    def state(self) -> str:
        if self._state == CircuitState.OPEN and self._last_failure_time is not None:
            if time.monotonic() - self._last_failure_time >= self.recovery_timeout:
                self._state = CircuitState.HALF_OPEN
        return self._state

    def allow_request(self) -> bool:
        return self.state in (CircuitState.CLOSED, CircuitState.HALF_OPEN)

    def record_success(self) -> None:
        self._failure_count = 0
        self._state = CircuitState.CLOSED

    def record_failure(self) -> None:
        self._failure_count += 1
        self._last_failure_time = time.monotonic()

        if self._failure_count >= self.failure_threshold:
            self._state = CircuitState.OPEN
            logger.warning(
                "Circuit breaker opened",
                extra={
                    "failure_count": self._failure_count,
                    "recovery_timeout": self.recovery_timeout
                }
            )


@dataclass
class SlackMessage:
    """Slack escalation message."""
    event_id: str
    entity_type: str
    entity_id: str
    entity_title: Optional[str]
    escalated_to: str
    reason: str
    rule_name: Optional[str]
    created_at: str
    channel: Optional[str] = None


class SlackClient:
    """
    Slack webhook client with circuit breaker and retry logic.

    Handles sending escalation messages to Slack with:
    - Circuit breaker to prevent cascade failures
    - Exponential backoff retry
    - Timeout handling
    """

    def __init__(
        self,
        webhook_url: Optional[str] = None,
        default_channel: Optional[str] = None,
        timeout: Optional[float] = None,
        console_base_url: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        retry_base_delay: float = 1.0
    ):
        self.webhook_url = webhook_url if webhook_url is not None else settings.slack_webhook_url
        self.default_channel = default_channel or settings.slack_channel
        self.timeout = timeout or settings.slack_timeout_seconds
        self.console_base_url = (console_base_url or settings.console_base_url).rstrip("/")
        self.retry_base_delay = retry_base_delay
        self._circuit_breaker = CircuitBreaker(failure_threshold=5, recovery_timeout=60)
        self._http_client = http_client

    @property
    def is_configured(self) -> bool:
        return bool(self.webhook_url)

    @property
    def circuit_breaker(self) -> CircuitBreaker:
        return self._circuit_breaker

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout)
        return self._http_client

    def _entity_url(self, data: SlackMessage) -> str:
        return f"{self.console_base_url}/{data.entity_type}/{data.entity_id}"

    def _build_message(self, data: SlackMessage) -> Dict[str, Any]:
        """Build Slack Block Kit message."""
        label = data.entity_title or data.entity_id
        source = data.rule_name or "Manual escalation"

        blocks = [
            {
                "type": "header",
                "text": {
                    "type": "plain_text",
                    "text": f":rotating_light: Escalation: {data.entity_type.replace('_', ' ').title()}",
                    "emoji": True
                }
            },
            {
                "type": "section",
                "fields": [
                    {"type": "mrkdwn", "text": f"*Entity:*\n<{self._entity_url(data)}|{label}>"},
                    {"type": "mrkdwn", "text": f"*Escalated To:*\n{data.escalated_to}"},
                    {"type": "mrkdwn", "text": f"*Rule:*\n{source}"},
                    {"type": "mrkdwn", "text": f"*Reason:*\n{data.reason}"}
                ]
            },
            {
                "type": "context",
                "elements": [
                    {"type": "mrkdwn", "text": f"Raised: {data.created_at} | Event: {data.event_id}"}
                ]
            }
        ]

        return {
            "channel": data.channel or self.default_channel,
            "text": f"Escalation: {label} - {data.reason}",
            "blocks": blocks
        }

    async def send_alert(
        self,
        data: SlackMessage,
        max_retries: int = 3
    ) -> bool:
        """
        Send an escalation message to the Slack webhook.

        Returns:
            True if sent successfully, False otherwise
        """
        if not self.webhook_url:
            logger.debug("Slack webhook URL not configured, skipping notification")
            return False

        if not self._circuit_breaker.allow_request():
            logger.warning(
                "Circuit breaker open, skipping Slack notification",
                extra={"event_id": data.event_id}
            )
            return False

        message = self._build_message(data)

        for attempt in range(max_retries):
            try:
                client = await self._get_client()
                response = await client.post(self.webhook_url, json=message)

                if response.status_code == 200:
                    self._circuit_breaker.record_success()
                    logger.info(
                        "Slack notification sent",
                        extra={"event_id": data.event_id, "entity_type": data.entity_type}
                    )
                    return True

                logger.warning(
                    "Slack webhook returned non-200",
                    extra={"status_code": response.status_code, "attempt": attempt + 1}
                )
            except httpx.HTTPError as e:
                logger.error(
                    "Slack notification failed",
                    extra={"error": str(e), "attempt": attempt + 1, "event_id": data.event_id}
                )

            if attempt < max_retries - 1:
                await asyncio.sleep(self.retry_base_delay * (2 ** attempt))

        self._circuit_breaker.record_failure()
        return False

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None


class EscalationScheduler:
    """
    Wrapper for APScheduler running periodic evaluator sweeps.

    One job, at most one instance at a time; missed runs are coalesced
    rather than queued so a slow sweep never causes a pile-up.
    """

    JOB_ID = "escalation_sweep"

    def __init__(self, interval_seconds: int = 900):
        self.interval_seconds = interval_seconds
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._running = False

    async def start(self, job_func: Callable[[], Awaitable[Any]]) -> None:
        """Start the scheduler with the given job function."""
        if self._running:
            logger.warning("Escalation scheduler already running")
            return

        self._scheduler = AsyncIOScheduler()

        self._scheduler.add_job(
            job_func,
            "interval",
            seconds=self.interval_seconds,
            id=self.JOB_ID,
            name="Escalation Sweep Job",
            misfire_grace_time=60,
            max_instances=1,
            coalesce=True,
            replace_existing=True
        )

        self._scheduler.start()
        self._running = True

        logger.info(
            "Escalation scheduler started",
            extra={"interval_seconds": self.interval_seconds}
        )

    async def stop(self) -> None:
        """Stop the scheduler; an in-flight sweep is cancelled by the evaluator."""
        if not self._running:
            return

        if self._scheduler:
            self._scheduler.shutdown(wait=False)

        self._running = False
        logger.info("Escalation scheduler stopped")

    @property
    def is_running(self) -> bool:
        return self._running
