"""
Global Control Plane - Alerting.

============================================================
PURPOSE
============================================================
Send immediate alerts for control decisions via Telegram.

ALERTED DECISIONS:
- Escalation to FROZEN: HIGH
- Escalation to KILLED: URGENT
- Global kill: URGENT
- Manual reset: LOW
- Escalation to THROTTLED: MEDIUM (only if enabled)

Decisions that leave the state unchanged are not alerted.
Delivery failures are logged and never affect decisions.

============================================================
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional, Dict, Any, List

import aiohttp

from .types import ControlState, ControlDecision
from .config import AlertingConfig
from .clock import Clock, SystemClock


logger = logging.getLogger(__name__)


# ============================================================
# ALERT TYPES
# ============================================================

class AlertPriority(Enum):
    """Alert priority levels."""

    LOW = "low"
    """Informational only."""

    MEDIUM = "medium"
    """Warning, requires attention."""

    HIGH = "high"
    """Critical, requires immediate attention."""

    URGENT = "urgent"
    """Emergency, requires immediate action."""


@dataclass
class Alert:
    """Alert to be sent."""

    priority: AlertPriority
    title: str
    message: str

    details: Dict[str, Any] = field(default_factory=dict)

    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    decision: Optional[ControlDecision] = None
    """Related decision."""

    @property
    def dedup_key(self) -> str:
        return f"{self.title}:{self.message[:100]}"


# ============================================================
# ALERT FORMATTERS
# ============================================================

_PRIORITY_BY_STATE = {
    ControlState.ACTIVE: AlertPriority.LOW,
    ControlState.THROTTLED: AlertPriority.MEDIUM,
    ControlState.FROZEN: AlertPriority.HIGH,
    ControlState.KILLED: AlertPriority.URGENT,
}

_EMOJI_BY_STATE = {
    ControlState.ACTIVE: "✅",
    ControlState.THROTTLED: "⚠️",
    ControlState.FROZEN: "🛑",
    ControlState.KILLED: "🚨",
}


def format_decision_alert(decision: ControlDecision) -> Alert:
    """
    Format a control decision as an alert.

    Args:
        decision: Committed decision

    Returns:
        Formatted alert
    """
    state = decision.new_state
    emoji = _EMOJI_BY_STATE[state]

    if decision.target.is_global and state == ControlState.KILLED:
        title = f"{emoji} GLOBAL KILL ACTIVE"
    else:
        title = f"{emoji} {decision.target}: {state.value}"

    lines = [
        f"**Target:** `{decision.target}`",
        f"**From:** {decision.previous_state.value}",
        f"**To:** {state.value}",
        f"**Time:** {decision.decided_at.strftime('%Y-%m-%d %H:%M:%S UTC')}",
        f"**Decision:** `{decision.decision_id}`",
        "",
        "**Reason:**",
        decision.reason,
    ]

    if decision.requires_manual_reset:
        lines.append("")
        lines.append("**Action required:** manual reset by an administrator")

    return Alert(
        priority=_PRIORITY_BY_STATE[state],
        title=title,
        message="\n".join(lines),
        details={
            "target": str(decision.target),
            "from_state": decision.previous_state.value,
            "to_state": state.value,
            "global_kill_override": decision.global_kill_override,
        },
        timestamp=decision.decided_at,
        decision=decision,
    )


def format_reset_alert(decision: ControlDecision) -> Alert:
    """Format a manual reset as an alert."""
    lines = [
        f"**Target:** `{decision.target}`",
        f"**Admin:** {decision.admin_id}",
        f"**From:** {decision.previous_state.value}",
        "**To:** ACTIVE",
        f"**Time:** {decision.decided_at.strftime('%Y-%m-%d %H:%M:%S UTC')}",
        "",
        decision.reason,
    ]

    return Alert(
        priority=AlertPriority.LOW,
        title=f"✅ RESET: {decision.target}",
        message="\n".join(lines),
        details={
            "target": str(decision.target),
            "admin_id": decision.admin_id,
            "from_state": decision.previous_state.value,
        },
        timestamp=decision.decided_at,
        decision=decision,
    )


# ============================================================
# ALERT SENDERS
# ============================================================

class AlertSender(ABC):
    """Abstract interface for sending alerts."""

    @abstractmethod
    async def send(self, alert: Alert) -> bool:
        """
        Send an alert.

        Returns:
            True if sent successfully
        """
        pass


class TelegramAlertSender(AlertSender):
    """
    Sends alerts via the Telegram Bot API.
    """

    MAX_MESSAGE_LENGTH = 4096

    def __init__(
        self,
        bot_token: str,
        chat_id: str,
        parse_mode: str = "Markdown",
        timeout_seconds: float = 10.0,
    ):
        self._chat_id = chat_id
        self._parse_mode = parse_mode
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._api_url = f"https://api.telegram.org/bot{bot_token}/sendMessage"

    def build_payload(self, alert: Alert) -> Dict[str, Any]:
        text = f"*{alert.title}*\n\n{alert.message}"
        if len(text) > self.MAX_MESSAGE_LENGTH:
            text = text[:self.MAX_MESSAGE_LENGTH - 3] + "..."
        return {
            "chat_id": self._chat_id,
            "text": text,
            "parse_mode": self._parse_mode,
        }

    async def send(self, alert: Alert) -> bool:
        """Send alert via Telegram."""
        payload = self.build_payload(alert)
        try:
            async with aiohttp.ClientSession(timeout=self._timeout) as session:
                async with session.post(self._api_url, json=payload) as response:
                    if response.status == 200:
                        logger.info(f"Telegram alert sent: {alert.title}")
                        return True
                    error = await response.text()
                    logger.error(f"Telegram send failed ({response.status}): {error}")
                    return False
        except aiohttp.ClientError as e:
            logger.error(f"Telegram send error: {e}")
            return False


class ConsoleAlertSender(AlertSender):
    """Logs alerts (development)."""

    async def send(self, alert: Alert) -> bool:
        logger.warning(
            f"ALERT [{alert.priority.value.upper()}] {alert.title}\n{alert.message}"
        )
        return True


# ============================================================
# ALERTING SERVICE
# ============================================================

class AlertingService:
    """
    Alerting service for the control plane.

    - Filters decisions worth alerting
    - Deduplicates identical alerts inside a window
    - Fans out to every configured sender
    """

    def __init__(
        self,
        config: AlertingConfig,
        senders: Optional[List[AlertSender]] = None,
        clock: Optional[Clock] = None,
    ):
        self._config = config
        self._senders: List[AlertSender] = list(senders or [])
        self._clock = clock or SystemClock()
        self._recent_alerts: Dict[str, datetime] = {}

        if (
            not senders
            and config.telegram_enabled
            and config.telegram_bot_token
            and config.telegram_chat_id
        ):
            self._senders.append(
                TelegramAlertSender(config.telegram_bot_token, config.telegram_chat_id)
            )

    @property
    def senders(self) -> List[AlertSender]:
        return list(self._senders)

    def add_sender(self, sender: AlertSender) -> None:
        self._senders.append(sender)

    def should_alert(self, decision: ControlDecision) -> bool:
        if not self._config.enabled:
            return False
        if decision.admin_id is not None:
            return decision.is_transition
        if not decision.is_escalation:
            return False
        if decision.new_state == ControlState.THROTTLED:
            return self._config.alert_on_throttle
        return True

    async def alert_decision(self, decision: ControlDecision) -> bool:
        """
        Send an alert for a committed decision.

        Returns:
            True if an alert went out
        """
        if not self.should_alert(decision):
            return False

        if decision.admin_id is not None:
            alert = format_reset_alert(decision)
        else:
            alert = format_decision_alert(decision)

        return await self._send_alert(alert)

    async def _send_alert(self, alert: Alert) -> bool:
        now = self._clock.now()
        window = timedelta(seconds=self._config.dedup_window_seconds)

        last_sent = self._recent_alerts.get(alert.dedup_key)
        if last_sent is not None and now - last_sent < window:
            logger.debug(f"Skipping duplicate alert: {alert.title}")
            return False

        for sender in self._senders:
            try:
                await sender.send(alert)
            except Exception as e:
                logger.error(f"Alert sender {type(sender).__name__} failed: {e}")

        self._recent_alerts[alert.dedup_key] = now
        self._cleanup_recent_alerts(now)
        return True

    def _cleanup_recent_alerts(self, now: datetime) -> None:
        expiry = timedelta(hours=1)
        expired = [
            key for key, timestamp in self._recent_alerts.items()
            if now - timestamp > expiry
        ]
        for key in expired:
            del self._recent_alerts[key]
