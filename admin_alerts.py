"""
Operator alerts for the domain lifecycle service

Raised for conditions nobody but an operator can fix: a paid registration that
failed, a hosting platform refusing a mapping, a zone or binding left behind by a
delete, a domain that has been waiting on DNS for days.

Alerts below ALERT_MIN_SEVERITY are dropped. Identical alerts are suppressed for
ALERT_SUPPRESSION_WINDOW seconds and at most ALERT_MAX_PER_WINDOW go out per
ALERT_RATE_LIMIT_WINDOW. Delivery is a JSON POST to ADMIN_ALERT_WEBHOOK_URL; without
one the alert is only logged.
"""

import os
import time
import logging
import hashlib
from collections import deque
from datetime import datetime, timezone
from typing import Deque, Dict, Optional, Any, Union
from enum import Enum
from dataclasses import dataclass, field

import httpx

import database

logger = logging.getLogger(__name__)


class AlertSeverity(Enum):
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"

    @property
    def rank(self) -> int:
        return list(AlertSeverity).index(self)

    @property
    def icon(self) -> str:
        return {"INFO": "🔵", "WARNING": "🟡", "ERROR": "🟠", "CRITICAL": "🔴"}[self.value]


class AlertCategory(Enum):
    DOMAIN_REGISTRATION = "domain_registration"
    PAYMENTS = "payments"
    DNS = "dns"
    HOSTING = "hosting"
    EXTERNAL_API = "external_api"
    SYSTEM = "system"


@dataclass
class OperatorAlert:
    severity: AlertSeverity
    category: AlertCategory
    component: str
    message: str
    details: Dict[str, Any] = field(default_factory=dict)
    raised_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def fingerprint(self) -> str:
        """Same severity, category, component and message means the same alert"""
        key = f"{self.severity.value}|{self.category.value}|{self.component}|{self.message}"
        return hashlib.sha1(key.encode()).hexdigest()

    def render(self) -> str:
        lines = [
            f"{self.severity.icon} {self.severity.value} [{self.category.value}] {self.component}",
            self.message,
        ]
        for key, value in self.details.items():
            if isinstance(value, (list, tuple)):
                value = ", ".join(str(v) for v in value)
            lines.append(f"  • {key}: {value}")
        lines.append(self.raised_at.strftime("%Y-%m-%d %H:%M:%S UTC"))
        return "\n".join(lines)

    def as_payload(self) -> Dict[str, Any]:
        return {
            'text': self.render(),
            'severity': self.severity.value,
            'category': self.category.value,
            'component': self.component,
            'message': self.message,
            'details': self.details,
            'raised_at': self.raised_at.isoformat(),
            'fingerprint': self.fingerprint,
        }


class AlertPolicy:
    """Environment-driven delivery settings"""

    def __init__(self):
        self.webhook_url = os.getenv('ADMIN_ALERT_WEBHOOK_URL', '')
        self.enabled = os.getenv('ADMIN_ALERTS_ENABLED', 'true').lower() == 'true'
        self.min_severity = AlertSeverity(os.getenv('ALERT_MIN_SEVERITY', 'WARNING').upper())
        self.rate_window = float(os.getenv('ALERT_RATE_LIMIT_WINDOW', '300'))
        self.max_per_window = int(os.getenv('ALERT_MAX_PER_WINDOW', '10'))
        self.suppression_window = float(os.getenv('ALERT_SUPPRESSION_WINDOW', '3600'))

        if not self.webhook_url:
            logger.warning("⚠️ ADMIN_ALERT_WEBHOOK_URL not set - operator alerts will only be logged")


class AdminAlertSystem:
    """Filters, throttles and delivers operator alerts"""

    def __init__(self, policy: Optional[AlertPolicy] = None, clock=time.monotonic):
        self.policy = policy or AlertPolicy()
        self.clock = clock
        self._sent_at: Deque[float] = deque()
        self._quiet_until: Dict[str, float] = {}
        self.delivered: Deque[OperatorAlert] = deque(maxlen=100)

    def _throttled(self, now: float) -> bool:
        while self._sent_at and now - self._sent_at[0] > self.policy.rate_window:
            self._sent_at.popleft()
        return len(self._sent_at) >= self.policy.max_per_window

    def _suppressed(self, fingerprint: str, now: float) -> bool:
        until = self._quiet_until.get(fingerprint)
        if until is not None and now >= until:
            del self._quiet_until[fingerprint]
            return False
        return until is not None

    async def _post(self, alert: OperatorAlert) -> bool:
        if not self.policy.webhook_url:
            return True
        try:
            async with httpx.AsyncClient(timeout=10.0) as client:
                response = await client.post(self.policy.webhook_url, json=alert.as_payload())
        except httpx.HTTPError as e:
            logger.error(f"❌ Operator alert webhook unreachable: {e}")
            return False
        if response.status_code >= 400:
            logger.error(f"❌ Operator alert webhook returned HTTP {response.status_code}")
            return False
        return True

    async def _persist(self, alert: OperatorAlert):
        if not database.is_database_configured():
            return
        try:
            await database.insert_admin_alert_row({
                'severity': alert.severity.value,
                'category': alert.category.value,
                'component': alert.component,
                'message': alert.message,
                'details': alert.details,
                'fingerprint': alert.fingerprint,
            })
        except Exception as e:
            # Losing the audit row must not stop the alert itself
            logger.error(f"❌ Could not store operator alert: {e}")

    async def send_alert(self, severity: Union[AlertSeverity, str], category: Union[AlertCategory, str],
                         component: str, message: str, details: Optional[Dict[str, Any]] = None) -> bool:
        """
        Raise an operator alert

        Returns:
            bool: True if the alert went out, False if it was filtered, throttled or undeliverable
        """
        if not self.policy.enabled:
            return False

        severity = severity if isinstance(severity, AlertSeverity) else AlertSeverity(severity.upper())
        category = category if isinstance(category, AlertCategory) else AlertCategory(category.lower())
        if severity.rank < self.policy.min_severity.rank:
            return False

        alert = OperatorAlert(severity, category, component, message, dict(details or {}))
        now = self.clock()
        if self._suppressed(alert.fingerprint, now):
            logger.debug(f"🔕 Duplicate alert suppressed: [{component}] {message}")
            return False
        if self._throttled(now):
            logger.warning(f"⚠️ Operator alerts throttled - dropped: [{component}] {message}")
            return False

        logger.log(getattr(logging, severity.value), f"🚨 OPERATOR ALERT ({severity.value}): [{component}] {message}")
        sent = await self._post(alert)
        await self._persist(alert)
        if sent:
            self._sent_at.append(now)
            self._quiet_until[alert.fingerprint] = now + self.policy.suppression_window
            self.delivered.append(alert)
        return sent


_admin_alert_system: Optional[AdminAlertSystem] = None


def get_admin_alert_system() -> AdminAlertSystem:
    global _admin_alert_system
    if _admin_alert_system is None:
        _admin_alert_system = AdminAlertSystem()
    return _admin_alert_system


def reset_admin_alert_system():
    global _admin_alert_system
    _admin_alert_system = None


async def send_critical_alert(component: str, message: str, category: str = "system",
                              details: Optional[Dict[str, Any]] = None) -> bool:
    return await get_admin_alert_system().send_alert(AlertSeverity.CRITICAL, category, component, message, details)


async def send_warning_alert(component: str, message: str, category: str = "system",
                             details: Optional[Dict[str, Any]] = None) -> bool:
    return await get_admin_alert_system().send_alert(AlertSeverity.WARNING, category, component, message, details)
