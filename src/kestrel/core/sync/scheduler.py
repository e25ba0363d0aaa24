"""
Background synchronization for the Kestrel cache engine.

Runs one loop per account. Each loop syncs once right away and then on a
fixed interval until the shared stop event is set.
"""

import threading
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, Dict, Iterable, List, Optional

from ...utils.logging_setup import get_logger
from ...config.app_config import MIN_SYNC_INTERVAL_MINUTES
from ...data.repositories.sync_store import (
    RESOURCE_EMAILS, RESOURCE_FOLDERS, RESOURCE_EVENTS, RESOURCE_CONTACTS
)
from ..cache_database import BatchWriteError, CacheUnavailableError
from ..cache_manager import AccountStores
from .connectivity import ConnectivityMonitor
from .converters import message_to_cached, folder_to_cached, event_to_cached, contact_to_cached
from .metrics import SyncMetrics
from .remote import RemoteProvider
from .replay import OfflineReplayer

logger = get_logger(__name__)

DEFAULT_INTERVAL_MINUTES = 5
DEFAULT_CYCLE_TIMEOUT = 120.0
DEFAULT_EMAIL_PAGE_SIZE = 100


@dataclass(frozen=True)
class SyncAccount:
    """An account to keep in sync: its email and remote grant id."""
    email: str
    grant_id: str


class SyncCycleAborted(Exception):
    """Stop was requested or the cycle ran out of time."""
    pass


class SyncScheduler:
    """
    Supervises the per-account sync loops.
    
    Within an account, resources sync one after another (emails, folders,
    events, contacts) so only one writer touches its database. Accounts
    sync in parallel, one thread each.
    """
    
    def __init__(
        self,
        cache_manager,
        remote: Optional[RemoteProvider],
        connectivity: ConnectivityMonitor,
        metrics: SyncMetrics,
        interval_minutes: int = DEFAULT_INTERVAL_MINUTES,
        cycle_timeout: float = DEFAULT_CYCLE_TIMEOUT,
        email_page_size: int = DEFAULT_EMAIL_PAGE_SIZE,
        replayer: Optional[OfflineReplayer] = None,
        after_cycle: Optional[Callable[[SyncAccount], None]] = None
    ):
        """
        Initialize the scheduler.
        
        Args:
            cache_manager: CacheManager owning the account databases
            remote: Remote provider; syncing is skipped while it is None
            connectivity: Shared online/offline state
            metrics: Shared sync metrics
            interval_minutes: Minutes between cycles, at least one
            cycle_timeout: Seconds one account cycle may take
            email_page_size: Messages fetched per cycle
            replayer: Replays the offline queue at the start of online cycles
            after_cycle: Called after every completed cycle (maintenance hook)
        """
        self.cache_manager = cache_manager
        self.remote = remote
        self.connectivity = connectivity
        self.metrics = metrics
        self.interval = timedelta(minutes=max(interval_minutes, MIN_SYNC_INTERVAL_MINUTES))
        self.cycle_timeout = cycle_timeout
        self.email_page_size = email_page_size
        self.replayer = replayer
        self.after_cycle = after_cycle
        self.logger = logger
        
        self._stop_event = threading.Event()
        self._threads: Dict[str, threading.Thread] = {}
        self._account_locks: Dict[str, threading.Lock] = {}
        self._lock = threading.Lock()
    
    @property
    def running(self) -> bool:
        with self._lock:
            return any(thread.is_alive() for thread in self._threads.values())
    
    @property
    def stop_requested(self) -> bool:
        return self._stop_event.is_set()
    
    def start(self, accounts: Iterable[SyncAccount]) -> List[str]:
        """
        Start a sync loop for every account that does not have one yet.
        
        Returns:
            List[str]: Emails of the accounts whose loops were started
        """
        started = []
        with self._lock:
            # A fresh start after stop() needs the event reset
            if not any(thread.is_alive() for thread in self._threads.values()):
                self._stop_event.clear()
            
            for account in accounts:
                thread = self._threads.get(account.email)
                # Already running
                if thread is not None and thread.is_alive():
                    continue
                
                thread = threading.Thread(
                    target=self._run_loop,
                    args=(account,),
                    name=f"kestrel-sync-{account.email}",
                    daemon=True
                )
                self._threads[account.email] = thread
                thread.start()
                started.append(account.email)
        
        if started:
            self.logger.info(f"Started background sync for {len(started)} accounts every {self.interval}")
        return started
    
    def stop(self, timeout: Optional[float] = None) -> bool:
        """
        Signal every loop to stop and wait for them to exit.
        
        Args:
            timeout: Seconds to wait for each thread; None waits indefinitely
        
        Returns:
            bool: True if every loop has exited
        """
        # Wake every loop out of its interval wait
        self._stop_event.set()
        with self._lock:
            threads = list(self._threads.values())
        
        # Wait for loops to finish their current cycle
        for thread in threads:
            thread.join(timeout)
        
        stopped = not any(thread.is_alive() for thread in threads)
        if stopped:
            with self._lock:
                self._threads.clear()
            self.logger.info("Background sync stopped")
        else:
            self.logger.warning("Some sync loops did not stop in time")
        return stopped
    
    def _run_loop(self, account: SyncAccount) -> None:
        self.logger.info(f"Sync loop started for {account.email}")
        while not self._stop_event.is_set():
            try:
                self.sync_account(account)
            except Exception as e:
                self.logger.error(f"Sync cycle for {account.email} crashed: {e}", exc_info=True)
            
            # Sleep until the next cycle, or until stop() is called
            if self._stop_event.wait(self.interval.total_seconds()):
                break
        self.logger.info(f"Sync loop stopped for {account.email}")
    
    def _account_lock(self, email: str) -> threading.Lock:
        with self._lock:
            return self._account_locks.setdefault(email, threading.Lock())
    
    def sync_account(self, account: SyncAccount) -> bool:
        """
        Run one sync cycle for an account.
        
        Only one cycle per account runs at a time; a second caller returns
        immediately.
        
        Returns:
            bool: True if every step of the cycle ran
        """
        if self.remote is None:
            self.logger.debug(f"No remote provider configured, skipping sync for {account.email}")
            return False
        
        lock = self._account_lock(account.email)
        # Skip if another cycle for this account is in progress
        if not lock.acquire(blocking=False):
            self.logger.debug(f"Sync already running for {account.email}")
            return False
        
        try:
            self.metrics.record_cycle(account.email)
            completed = self._run_cycle(account)
        finally:
            lock.release()
        
        # Maintenance runs outside the account lock
        if completed and self.after_cycle is not None:
            try:
                self.after_cycle(account)
            except CacheUnavailableError as e:
                self.logger.info(f"Post-sync maintenance skipped for {account.email}: {e}")
        return completed
    
    def _remaining(self, deadline: float) -> float:
        if self._stop_event.is_set():
            raise SyncCycleAborted("stop requested")
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise SyncCycleAborted(f"cycle exceeded {self.cycle_timeout}s")
        return remaining
    
    def _run_cycle(self, account: SyncAccount) -> bool:
        deadline = time.monotonic() + self.cycle_timeout
        try:
            # Every step writes through this one handle; a cache cleared
            # mid-cycle makes it raise instead of reopening the database
            stores = self.cache_manager.stores(account.email)
            
            # Push queued writes before pulling remote state
            if self.replayer is not None and self.connectivity.is_online:
                self._replay(account)
            
            # Emails first; failure here means offline
            if not self._sync_emails(account, stores, deadline):
                return False
            
            # Remaining resources are independent of each other
            for resource, step in (
                (RESOURCE_FOLDERS, self._sync_folders),
                (RESOURCE_EVENTS, self._sync_events),
                (RESOURCE_CONTACTS, self._sync_contacts),
            ):
                self._sync_resource(account, stores, resource, step, deadline)
            return True
        
        except SyncCycleAborted as e:
            self.logger.info(f"Sync cycle for {account.email} ended early: {e}")
            return False
        except CacheUnavailableError as e:
            self.logger.info(f"Cache for {account.email} unavailable, ending sync cycle: {e}")
            return False
    
    def _replay(self, account: SyncAccount) -> None:
        queue = self.cache_manager.offline_queue(account.email)
        if queue.has_pending_actions():
            self.replayer.drain(queue, account.grant_id, account.email)
    
    def _sync_emails(self, account: SyncAccount, stores: AccountStores, deadline: float) -> bool:
        """
        Sync the primary resource; its outcome decides online/offline.
        
        While offline this is the only call made, as a reachability check.
        """
        remaining = self._remaining(deadline)
        stores.sync_state.touch(RESOURCE_EMAILS)
        
        try:
            messages = self.remote.get_messages(account.grant_id, limit=self.email_page_size, timeout=remaining)
        except Exception as e:
            self.logger.warning(f"Email sync failed for {account.email}: {e}")
            self.metrics.record_failure(account.email, RESOURCE_EMAILS, e)
            # Mark offline
            self.connectivity.set_online(False)
            return False
        
        # Mark online
        self.connectivity.set_online(True)
        self._store(
            account,
            stores,
            RESOURCE_EMAILS,
            stores.emails.put_batch,
            [message_to_cached(message) for message in messages]
        )
        return True
    
    def _sync_resource(self, account: SyncAccount, stores: AccountStores, resource: str, step, deadline: float) -> None:
        remaining = self._remaining(deadline)
        stores.sync_state.touch(resource)
        try:
            step(account, stores, deadline, remaining)
        except (SyncCycleAborted, CacheUnavailableError):
            raise
        except Exception as e:
            # One failing resource must not block the others
            self.logger.warning(f"Sync of {resource} failed for {account.email}: {e}")
            self.metrics.record_failure(account.email, resource, e)
    
    def _store(self, account: SyncAccount, stores: AccountStores, resource: str, write, items: list) -> bool:
        """Write fetched items and advance the checkpoint if the write succeeded."""
        try:
            written = write(items)
        except BatchWriteError as e:
            self.logger.error(f"Failed to cache {resource} for {account.email}: {e}")
            self.metrics.record_failure(account.email, resource, e)
            return False
        
        # Advance checkpoint
        stores.sync_state.mark_synced(resource)
        self.metrics.record_success(account.email, resource, written)
        self.logger.debug(f"Synced {written} {resource} for {account.email}")
        return True
    
    def _sync_folders(self, account: SyncAccount, stores: AccountStores, deadline: float, remaining: float) -> None:
        folders = self.remote.get_folders(account.grant_id, timeout=remaining)
        self._store(
            account,
            stores,
            RESOURCE_FOLDERS,
            stores.folders.put_batch,
            [folder_to_cached(folder) for folder in folders]
        )
    
    def _sync_events(self, account: SyncAccount, stores: AccountStores, deadline: float, remaining: float) -> None:
        calendars = self.remote.get_calendars(account.grant_id, timeout=remaining)
        
        written = 0
        failed = False
        # Fetch each calendar separately
        for calendar in calendars:
            remaining = self._remaining(deadline)
            try:
                events = self.remote.get_events(account.grant_id, calendar.id, timeout=remaining)
                written += stores.events.put_batch([event_to_cached(event) for event in events])
            except (SyncCycleAborted, CacheUnavailableError):
                raise
            except Exception as e:
                self.logger.warning(f"Event sync failed for calendar {calendar.id} of {account.email}: {e}")
                self.metrics.record_failure(account.email, RESOURCE_EVENTS, e)
                failed = True
        
        # The checkpoint only advances when every calendar made it in
        if not failed:
            stores.sync_state.mark_synced(RESOURCE_EVENTS)
            self.metrics.record_success(account.email, RESOURCE_EVENTS, written)
    
    def _sync_contacts(self, account: SyncAccount, stores: AccountStores, deadline: float, remaining: float) -> None:
        contacts = self.remote.get_contacts(account.grant_id, timeout=remaining)
        self._store(
            account,
            stores,
            RESOURCE_CONTACTS,
            stores.contacts.put_batch,
            [contact_to_cached(contact) for contact in contacts]
        )
