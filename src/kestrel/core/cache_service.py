"""
Cache service for the Kestrel cache engine.

Wires configuration, the cache manager, connectivity tracking, metrics,
the offline replayer and the sync scheduler together, and exposes the
cache status consumed by the outer layers.
"""

import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone, tzinfo
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from ..config.app_config import AppConfig
from ..utils.logging_setup import get_logger
from ..data.models.offline import ActionType, QueuedAction
from ..data.repositories.offline_queue import Payload
from .cache_database import CacheError, CacheUnavailableError
from .cache_manager import CacheManager, CacheStats
from .conflicts import EventConflict, find_conflicts
from .encryption import CacheKeyStore
from .search import SearchResult, DEFAULT_RESULT_LIMIT
from .sync.connectivity import ConnectivityMonitor
from .sync.metrics import SyncMetrics
from .sync.remote import RemoteProvider
from .sync.replay import OfflineReplayer
from .sync.scheduler import SyncScheduler, SyncAccount

logger = get_logger(__name__)


@dataclass
class CacheStatus:
    """Cache status as shown to the user."""
    enabled: bool
    online: bool
    accounts: List[CacheStats] = field(default_factory=list)
    total_size_bytes: int = 0
    pending_actions: int = 0
    last_sync: Optional[datetime] = None
    sync_interval_minutes: int = 0
    encryption_enabled: bool = False
    
    def to_dict(self) -> Dict:
        return {
            "enabled": self.enabled,
            "online": self.online,
            "accounts": [stats.to_dict() for stats in self.accounts],
            "total_size_bytes": self.total_size_bytes,
            "pending_actions": self.pending_actions,
            "last_sync": self.last_sync.isoformat() if self.last_sync else None,
            "sync_interval_minutes": self.sync_interval_minutes,
            "encryption_enabled": self.encryption_enabled,
        }


class CacheService:
    """
    Entry point for everything cache related.
    
    Builds its collaborators once and passes them to each other; there is
    no module level state.
    """
    
    def __init__(
        self,
        config: AppConfig,
        remote: Optional[RemoteProvider] = None,
        base_path: Optional[Path] = None,
        key_store: Optional[CacheKeyStore] = None
    ):
        """
        Initialize the cache service.
        
        Args:
            config: Engine configuration
            remote: Remote provider; without one nothing is synced or replayed
            base_path: Directory for the account databases
            key_store: Keyring-backed key store for encrypted caches
        """
        self.config = config
        self.remote = remote
        self.cache_manager = CacheManager(config, base_path, key_store)
        self.connectivity = ConnectivityMonitor()
        self.metrics = SyncMetrics()
        self.replayer = (
            OfflineReplayer(remote, config.cache.max_action_attempts, self.metrics)
            if remote is not None else None
        )
        self.scheduler = SyncScheduler(
            self.cache_manager,
            remote,
            self.connectivity,
            self.metrics,
            interval_minutes=config.sync.interval_minutes,
            cycle_timeout=config.sync.cycle_timeout_seconds,
            email_page_size=config.sync.email_page_size,
            replayer=self.replayer,
            after_cycle=self._after_cycle,
        )
        self.accounts: Dict[str, SyncAccount] = {}
        self.logger = logger
        self._lock = threading.Lock()
        
        # Replay queued writes as soon as we are back online
        self.connectivity.add_listener(self._on_connectivity_change)
    
    def add_account(self, email: str, grant_id: str) -> SyncAccount:
        account = SyncAccount(email=email, grant_id=grant_id)
        with self._lock:
            self.accounts[email] = account
        return account
    
    def start(self, accounts: Optional[Iterable[SyncAccount]] = None) -> bool:
        """
        Start background sync for the given (or all registered) accounts.
        
        Returns:
            bool: False if caching or background sync is disabled
        """
        # Register accounts passed in
        if accounts is not None:
            with self._lock:
                for account in accounts:
                    self.accounts[account.email] = account
        
        if not self.config.cache.enabled or not self.config.sync.background_enabled:
            self.logger.info("Background sync disabled by configuration")
            return False
        if self.remote is None:
            self.logger.warning("No remote provider configured, background sync not started")
            return False
        
        with self._lock:
            targets = list(self.accounts.values())
        self.scheduler.start(targets)
        return True
    
    def stop(self, timeout: Optional[float] = None) -> bool:
        """Stop background sync and close every cache."""
        stopped = self.scheduler.stop(timeout)
        self.cache_manager.close()
        return stopped
    
    # Offline queue
    
    def queue_action(
        self,
        email: str,
        action_type: ActionType,
        resource_id: str,
        payload: Payload = None
    ) -> QueuedAction:
        """
        Park a write for later replay.
        
        Raises:
            CacheError: If the offline queue is disabled
            CacheUnavailableError: If the account's cache cannot be opened
        """
        # Check queue setting
        if not self.config.cache.offline_queue_enabled:
            raise CacheError("Offline queue is disabled")
        return self.cache_manager.offline_queue(email).enqueue(action_type, resource_id, payload)
    
    def cancel_actions(self, email: str, resource_id: str) -> int:
        """Drop pending actions for a resource that was deleted locally."""
        return self.cache_manager.offline_queue(email).remove_by_resource_id(resource_id)
    
    def drain(self, email: str) -> int:
        """
        Replay an account's offline queue now.
        
        Returns:
            int: Number of actions replayed
        """
        account = self.accounts.get(email)
        if self.replayer is None or account is None:
            return 0
        return self.replayer.drain(self.cache_manager.offline_queue(email), account.grant_id, email)
    
    def drain_all(self) -> Dict[str, int]:
        results = {}
        with self._lock:
            emails = list(self.accounts)
        for email in emails:
            try:
                results[email] = self.drain(email)
            except CacheUnavailableError as e:
                self.logger.warning(f"Cannot replay offline actions for {email}: {e}")
        return results
    
    def remove_stale_actions(self) -> int:
        """Apply the configured stale-action limit to every account queue."""
        days = self.config.cache.stale_action_days
        if not days:
            return 0
        removed = 0
        with self._lock:
            emails = list(self.accounts)
        for email in emails:
            removed += self.cache_manager.offline_queue(email).remove_stale(timedelta(days=days))
        return removed
    
    def _on_connectivity_change(self, online: bool) -> None:
        if online:
            self.drain_all()
    
    def _after_cycle(self, account: SyncAccount) -> None:
        # Expire old entities, then enforce size limits
        self.cache_manager.prune_expired(account.email)
        self.cache_manager.enforce_size_limit(account.email)
        self.cache_manager.prune_attachments(account.email)
        self.cache_manager.prune_photos()
        days = self.config.cache.stale_action_days
        if days:
            self.cache_manager.offline_queue(account.email).remove_stale(timedelta(days=days))
    
    # Reads
    
    def search(self, email: str, query: str, limit: int = DEFAULT_RESULT_LIMIT) -> List[SearchResult]:
        return self.cache_manager.search(email, query, limit)
    
    def conflicts(
        self,
        email: str,
        start: datetime,
        end: datetime,
        tz: tzinfo = timezone.utc
    ) -> List[EventConflict]:
        """Overlapping busy events of an account within [start, end]."""
        events = self.cache_manager.events(email).list_by_date_range(start, end)
        return find_conflicts(events, tz)
    
    def clear_cache(self, email: str) -> None:
        self.cache_manager.clear_cache(email)
    
    def status(self) -> CacheStatus:
        """
        Collect the cache status for every known account.
        
        Accounts whose cache cannot be read are reported with zero counts.
        """
        status = CacheStatus(
            enabled=self.config.cache.enabled,
            online=self.connectivity.is_online,
            sync_interval_minutes=self.config.sync.interval_minutes,
            encryption_enabled=self.config.security.encryption_enabled,
        )
        if not status.enabled:
            return status
        
        with self._lock:
            emails = set(self.accounts)
        # Include caches on disk for accounts not registered this session
        emails.update(self.cache_manager.list_cached_accounts())
        
        for email in sorted(emails):
            try:
                stats = self.cache_manager.get_stats(email)
            except CacheUnavailableError as e:
                self.logger.warning(f"Cache status unavailable for {email}: {e}")
                stats = CacheStats(email=email, size_bytes=self.cache_manager.size_bytes(email))
            
            status.accounts.append(stats)
            status.total_size_bytes += stats.size_bytes
            status.pending_actions += stats.pending_actions
            # Most recent sync across accounts
            if stats.last_sync and (status.last_sync is None or stats.last_sync > status.last_sync):
                status.last_sync = stats.last_sync
        
        return status
