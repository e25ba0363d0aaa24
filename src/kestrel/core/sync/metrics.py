"""
Sync metrics for the Kestrel cache engine.

One SyncMetrics instance is created by the service and passed to the
scheduler and replayer.
"""

import threading
from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Dict, Optional, Tuple

from ...data.models.cache import utcnow


@dataclass
class ResourceMetrics:
    """Counters for one account resource."""
    items_synced: int = 0
    successes: int = 0
    failures: int = 0
    last_success: Optional[datetime] = None
    last_error: Optional[str] = None


@dataclass
class AccountMetrics:
    cycles: int = 0
    actions_replayed: int = 0
    replay_failures: int = 0
    last_cycle: Optional[datetime] = None


class SyncMetrics:
    """Thread-safe counters updated by the sync loops."""
    
    def __init__(self):
        self._lock = threading.Lock()
        self._accounts: Dict[str, AccountMetrics] = {}
        self._resources: Dict[Tuple[str, str], ResourceMetrics] = {}
    
    def _account(self, email: str) -> AccountMetrics:
        return self._accounts.setdefault(email, AccountMetrics())
    
    def _resource(self, email: str, resource: str) -> ResourceMetrics:
        return self._resources.setdefault((email, resource), ResourceMetrics())
    
    def record_cycle(self, email: str) -> None:
        with self._lock:
            account = self._account(email)
            account.cycles += 1
            account.last_cycle = utcnow()
    
    def record_success(self, email: str, resource: str, items: int) -> None:
        with self._lock:
            metrics = self._resource(email, resource)
            metrics.items_synced += items
            metrics.successes += 1
            metrics.last_success = utcnow()
    
    def record_failure(self, email: str, resource: str, error) -> None:
        with self._lock:
            metrics = self._resource(email, resource)
            metrics.failures += 1
            metrics.last_error = str(error)
    
    def record_replay(self, email: str, replayed: int = 0, failed: int = 0) -> None:
        with self._lock:
            account = self._account(email)
            account.actions_replayed += replayed
            account.replay_failures += failed
    
    def account(self, email: str) -> AccountMetrics:
        """Copy of an account's counters."""
        with self._lock:
            return AccountMetrics(**asdict(self._accounts.get(email, AccountMetrics())))
    
    def resource(self, email: str, resource: str) -> ResourceMetrics:
        """Copy of one resource's counters."""
        with self._lock:
            return ResourceMetrics(**asdict(self._resources.get((email, resource), ResourceMetrics())))
    
    def snapshot(self) -> Dict[str, Dict]:
        """All counters keyed by account email, as plain dicts."""
        with self._lock:
            result = {email: {"account": asdict(m), "resources": {}} for email, m in self._accounts.items()}
            # Accounts that only have resource counters still get an entry
            for (email, resource), metrics in self._resources.items():
                entry = result.setdefault(email, {"account": asdict(AccountMetrics()), "resources": {}})
                entry["resources"][resource] = asdict(metrics)
            return result
