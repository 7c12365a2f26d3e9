"""Operational alerts for failures that point at the host, not a submission."""

from __future__ import annotations

from dataclasses import dataclass
import logging
import time
from typing import Any, Optional

from contract_builder.errors import FailureReason

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Alert:
    kind: str
    message: str
    fatal: bool
    raised_at: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "message": self.message,
            "fatal": self.fatal,
            "raised_at": self.raised_at,
        }


class AlertBook:
    def __init__(self, runtime_failure_threshold: int = 3, max_alerts: int = 100) -> None:
        self._threshold = runtime_failure_threshold
        self._max_alerts = max_alerts
        self._alerts: list[Alert] = []
        self._consecutive_runtime_failures = 0
        self._halted = False

    @property
    def halted(self) -> bool:
        """True once a fatal alert was raised; cleared only by a restart."""
        return self._halted

    @property
    def alerts(self) -> list[Alert]:
        return list(self._alerts)

    def raise_alert(self, kind: str, message: str, fatal: bool = False) -> Alert:
        alert = Alert(kind=kind, message=message, fatal=fatal, raised_at=time.time())
        self._alerts.append(alert)
        del self._alerts[: -self._max_alerts]
        if fatal:
            self._halted = True
            logger.critical("%s: %s; admissions halted until restart", kind, message)
        else:
            logger.error("%s: %s", kind, message)
        return alert

    def record_outcome(self, reason: Optional[FailureReason], message: str = "") -> None:
        """Track a terminal session outcome and raise alerts for host-level failures."""
        if reason is FailureReason.VOLUME_PROVISION_FAILURE:
            self.raise_alert("volume_provision_failure", message or "volume provisioning failed")
        if reason is FailureReason.SANDBOX_RUNTIME_FAILURE:
            self._consecutive_runtime_failures += 1
            if self._consecutive_runtime_failures == self._threshold:
                self.raise_alert(
                    "sandbox_runtime_failure",
                    f"{self._threshold} consecutive sessions failed in the sandbox runtime: {message}",
                )
        elif reason is not FailureReason.VOLUME_PROVISION_FAILURE:
            self._consecutive_runtime_failures = 0
