"""
Notification Module

Records user-facing notifications for automation events. Delivery to chat
or e-mail is handled outside this service; everything here ends up in the
store's notification feed and the log.
"""
import logging
from enum import Enum
from typing import Dict, List, Optional

from models import Notification

logger = logging.getLogger(__name__)


def format_hashrate(hashrate_ghs: float) -> str:
    """Format hashrate from GH/s to appropriate human-readable unit."""
    if abs(hashrate_ghs) >= 1e6:
        return f"{hashrate_ghs / 1e6:.2f} PH/s"
    elif abs(hashrate_ghs) >= 1e3:
        return f"{hashrate_ghs / 1e3:.2f} TH/s"
    else:
        return f"{hashrate_ghs:.2f} GH/s"


class NotificationType(Enum):
    """Types of notifications"""
    OVERHEAT_LOCK = "OVERHEAT_LOCK"
    AUTO_RESTART = "AUTO_RESTART"
    LOW_HASHRATE_PROMPT = "LOW_HASHRATE_PROMPT"
    POWER_AUTOMATION = "POWER_AUTOMATION"


class NotificationManager:
    """Create notifications in the store"""

    def __init__(self, store):
        self.store = store

    def notify(self, notification_type: NotificationType, message: str,
               miner_id: Optional[str] = None, action: Optional[str] = None) -> Notification:
        """Persist a notification and mirror it to the log"""
        notification = Notification(
            type=notification_type.value,
            message=message,
            miner_id=miner_id,
            action=action,
        )
        self.store.create_notification(notification)
        logger.info(f"[{notification.type}] {message}")
        return notification

    def get_recent(self, limit: int = 50) -> List[Dict]:
        """Newest notifications first, as dicts"""
        return [n.to_dict() for n in self.store.list_notifications(limit)]

    # Convenience methods for the automation events

    def notify_overheat_lock(self, miner_id: str, temperature: float, threshold: float) -> Notification:
        return self.notify(
            NotificationType.OVERHEAT_LOCK,
            f"Miner {miner_id} reached {temperature:.1f}°C (limit {threshold:.1f}°C). "
            f"Sleep requested and manual control locked until unlocked.",
            miner_id=miner_id,
        )

    def notify_auto_restart(self, miner_id: str, hashrate_gh: float) -> Notification:
        return self.notify(
            NotificationType.AUTO_RESTART,
            f"Hashrate on {miner_id} dropped to {format_hashrate(hashrate_gh)}. Auto-restart issued.",
            miner_id=miner_id,
        )

    def notify_restart_prompt(self, miner_id: str, hashrate_gh: float) -> Notification:
        return self.notify(
            NotificationType.LOW_HASHRATE_PROMPT,
            f"Hashrate on {miner_id} dropped to {format_hashrate(hashrate_gh)}. "
            f"Auto-restart is disabled. Restart now?",
            miner_id=miner_id,
            action="RESTART",
        )

    def notify_power_action(self, miner_id: str, message: str) -> Notification:
        return self.notify(NotificationType.POWER_AUTOMATION, message, miner_id=miner_id)
