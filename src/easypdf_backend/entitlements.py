"""Premium entitlement checks backed by the subscriptions table."""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import timezone
from typing import Optional

from .database import Database
from .utils import utcnow


class EntitlementService(ABC):
    @abstractmethod
    def is_premium(self, user_id: Optional[str]) -> bool:
        ...


class SubscriptionEntitlements(EntitlementService):
    """
    A user is premium while they hold an ``active`` subscription whose
    current period has not ended. Cancelling at period end keeps the
    entitlement until that date.
    """

    def __init__(self, db: Database) -> None:
        self.db = db

    def is_premium(self, user_id: Optional[str]) -> bool:
        if not user_id:
            return False
        subscription = self.db.get_active_subscription(user_id)
        if subscription is None:
            return False
        period_end = subscription["current_period_end"]
        if period_end is None:
            return True
        if period_end.tzinfo is None:
            period_end = period_end.replace(tzinfo=timezone.utc)
        return period_end > utcnow()
