"""
Platform settings as seen by the ledger.

SettingsStore is the in-memory default for the settings collaborator; the
ledger only ever reads it through a SettingsCache so a busy payment path
does not hit the store on every transaction.
"""
import copy
import logging
import time
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)

DEFAULT_SETTINGS: Dict[str, Any] = {
    "platform": {
        "name": "Merchant Ledger",
        "description": "Mobile money payment gateway",
        "supportEmail": "support@example.com",
        "maintenanceMode": False,
    },
    "fees": {
        "transactionFeePercentage": 2.5,
        "minimumFee": 1.0,
        "maximumFee": 100.0,
        "payoutFee": 5.0,
    },
    "limits": {
        "dailyTransactionLimit": 10000,
        "monthlyTransactionLimit": 100000,
        "minimumTransactionAmount": 1,
        "maximumTransactionAmount": 50000,
    },
    "security": {
        "sessionTimeout": 30,
        "maxLoginAttempts": 5,
        "passwordMinLength": 8,
        "requireTwoFactor": False,
        "ipWhitelisting": False,
    },
    "notifications": {
        "emailNotifications": True,
        "smsNotifications": True,
        "webhookRetries": 3,
        "webhookTimeout": 30,
        "adminEmailAlerts": True,
    },
}

def deep_merge(target: Dict[str, Any], source: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    if not isinstance(source, dict):
        return target
    for key, value in source.items():
        if isinstance(value, dict):
            if not isinstance(target.get(key), dict):
                target[key] = {}
            deep_merge(target[key], value)
        else:
            target[key] = value
    return target

class SettingsStore:
    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self._settings = copy.deepcopy(DEFAULT_SETTINGS)
        deep_merge(self._settings, initial)

    def get_settings(self) -> Dict[str, Any]:
        return copy.deepcopy(self._settings)

    def update_settings(self, partial: Dict[str, Any]) -> Dict[str, Any]:
        deep_merge(self._settings, partial)
        logger.info(f"Platform settings updated: {sorted(partial or {})}")
        return self.get_settings()

class SettingsCache:
    """Time-bounded copy of the settings collaborator's answer"""

    def __init__(self, fetch: Callable[[], Dict[str, Any]], ttl: float, clock: Callable[[], float] = time.monotonic):
        self.fetch = fetch
        self.ttl = ttl
        self.clock = clock
        self.value: Optional[Dict[str, Any]] = None
        self.fetched_at: Optional[float] = None

    def is_fresh(self) -> bool:
        return self.fetched_at is not None and self.clock() - self.fetched_at < self.ttl

    def get(self) -> Dict[str, Any]:
        if not self.is_fresh():
            self.value = self.fetch()
            self.fetched_at = self.clock()
        return self.value

    def invalidate(self) -> None:
        self.value = None
        self.fetched_at = None

    def admin_payment_alerts_enabled(self) -> bool:
        return bool(self.get().get("notifications", {}).get("adminEmailAlerts", False))

class PlatformSettings:
    """Store plus cache; writes go through here so the cache never serves a stale answer"""

    def __init__(self, store: SettingsStore, ttl: float):
        self.store = store
        self.cache = SettingsCache(store.get_settings, ttl)

    def get_settings(self) -> Dict[str, Any]:
        return self.cache.get()

    def update_settings(self, partial: Dict[str, Any]) -> Dict[str, Any]:
        updated = self.store.update_settings(partial)
        self.cache.invalidate()
        return updated

    def admin_payment_alerts_enabled(self) -> bool:
        return self.cache.admin_payment_alerts_enabled()
