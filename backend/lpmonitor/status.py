from dataclasses import dataclass
from datetime import datetime
from typing import Optional


@dataclass
class MonitoringStatus:
    """
    Process-wide monitoring state for health queries.
    Not persisted: `rebuild()` derives it from the snapshot store on start.
    """
    positions_tracked: int = 0
    webhook_configured: bool = False
    last_check: Optional[datetime] = None
    last_webhook_at: Optional[datetime] = None
    cycles_completed: int = 0
    divergences: int = 0

    def rebuild(self, positions_tracked: int, webhook_configured: bool, last_check: datetime | None = None):
        self.positions_tracked = positions_tracked
        self.webhook_configured = webhook_configured
        if last_check is not None:
            self.last_check = last_check

    def record_poll_cycle(self, positions_tracked: int, succeeded: bool, ts: datetime = None):
        self.positions_tracked = positions_tracked
        self.cycles_completed += 1
        if succeeded:
            self.last_check = ts or datetime.utcnow()

    def record_webhook(self, positions_tracked: int, ts: datetime = None):
        self.positions_tracked = positions_tracked
        self.last_webhook_at = ts or datetime.utcnow()

    def record_divergence(self):
        self.divergences += 1

    def as_dict(self) -> dict:
        return {
            "positionsTracked": self.positions_tracked,
            "webhookConfigured": self.webhook_configured,
            "lastCheck": self.last_check.isoformat() if self.last_check else None,
            "lastWebhook": self.last_webhook_at.isoformat() if self.last_webhook_at else None,
            "cyclesCompleted": self.cycles_completed,
            "divergences": self.divergences,
        }
