"""
Account cache management for the Kestrel cache engine.

Owns one SQLite database per account, opened lazily on first use, and
hands out the per-entity stores, the offline queue and the shared photo
cache. Also reports cache statistics and clears caches on request.
"""

import shutil
import threading
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, List, Optional

from ..config.app_config import AppConfig
from ..utils.logging_setup import get_logger
from ..data.models.cache import Base, utcnow
from ..data.models.photos import PhotoBase
from ..data.repositories.email_store import EmailStore
from ..data.repositories.folder_store import FolderStore
from ..data.repositories.event_store import EventStore
from ..data.repositories.contact_store import ContactStore
from ..data.repositories.sync_store import SyncStore
from ..data.repositories.offline_queue import OfflineQueue
from ..data.repositories.photo_store import PhotoStore
from ..data.repositories.attachment_store import AttachmentStore
from .cache_database import CacheDatabase, CacheUnavailableError
from .encryption import CacheKeyStore
from .search import UnifiedSearch, SearchResult, DEFAULT_RESULT_LIMIT

logger = get_logger(__name__)

DB_SUFFIX = ".db"
SIDECAR_SUFFIXES = ("-wal", "-shm")
PHOTO_DB_NAME = "photos.db"
PHOTO_DIR_NAME = "photos"
ATTACHMENT_DIR_NAME = "attachments"
EVICTION_FRACTION = 0.25


@dataclass
class CacheStats:
    """Size and row counts of one account's cache."""
    email: str
    size_bytes: int = 0
    email_count: int = 0
    folder_count: int = 0
    event_count: int = 0
    contact_count: int = 0
    pending_actions: int = 0
    attachment_count: int = 0
    attachment_bytes: int = 0
    last_sync: Optional[datetime] = None
    
    def to_dict(self) -> Dict:
        data = asdict(self)
        data["last_sync"] = self.last_sync.isoformat() if self.last_sync else None
        return data


@dataclass
class AccountStores:
    """Stores of one account bound to a single database handle."""
    db: CacheDatabase
    emails: EmailStore
    folders: FolderStore
    events: EventStore
    contacts: ContactStore
    sync_state: SyncStore


def sanitize_email(email: str) -> str:
    """Turn an account email into a safe file name stem."""
    for char in ("/", "\\", ":"):
        email = email.replace(char, "_")
    return email


class CacheManager:
    """
    Lifecycle owner of all account caches.
    
    The map of open databases is guarded by a lock; the databases themselves
    rely on SQLite locking for concurrent readers and writers.
    """
    
    def __init__(
        self,
        config: AppConfig,
        base_path: Optional[Path] = None,
        key_store: Optional[CacheKeyStore] = None
    ):
        """
        Initialize the cache manager.
        
        Args:
            config: Engine configuration
            base_path: Directory for the account databases. Defaults to
                the ``accounts`` folder inside the configured cache directory.
            key_store: Keyring-backed key store used when encryption is enabled
        """
        self.config = config
        self.base_path = Path(base_path) if base_path else config.get_cache_dir() / "accounts"
        self.base_path.mkdir(parents=True, exist_ok=True)
        self.key_store = key_store or CacheKeyStore(config.security.keyring_service)
        
        self.logger = logger
        self._lock = threading.Lock()
        self._databases: Dict[str, CacheDatabase] = {}
        self._queues: Dict[str, OfflineQueue] = {}
        self._photo_db: Optional[CacheDatabase] = None
    
    @property
    def encryption_enabled(self) -> bool:
        return self.config.security.encryption_enabled
    
    def db_path(self, email: str) -> Path:
        return self.base_path / f"{sanitize_email(email)}{DB_SUFFIX}"
    
    def _files_for(self, email: str) -> List[Path]:
        path = self.db_path(email)
        return [path] + [path.with_name(path.name + suffix) for suffix in SIDECAR_SUFFIXES]
    
    def _open(self, email: str) -> CacheDatabase:
        cipher = self.key_store.cipher_for(email) if self.encryption_enabled else None
        db = CacheDatabase(self.db_path(email), Base.metadata, cipher=cipher, label=email)
        self.logger.info(f"Opened cache for {email}")
        return db
    
    def get_db(self, email: str) -> CacheDatabase:
        """
        Get the open database of an account, opening or creating it on first use.
        
        Raises:
            CacheUnavailableError: If caching is disabled or the file cannot be opened
            CacheLockedError: If the encrypted cache cannot be unlocked
        """
        if not self.config.cache.enabled:
            raise CacheUnavailableError("Local cache is disabled")
        
        # Fast path without the lock
        db = self._databases.get(email)
        if db is not None:
            return db
        
        with self._lock:
            db = self._databases.get(email)
            # Another thread may have opened it while we waited
            if db is None:
                db = self._open(email)
                self._databases[email] = db
            return db
    
    def is_open(self, email: str) -> bool:
        return email in self._databases
    
    # Store accessors
    
    def emails(self, email: str) -> EmailStore:
        return EmailStore(self.get_db(email))
    
    def folders(self, email: str) -> FolderStore:
        return FolderStore(self.get_db(email))
    
    def events(self, email: str) -> EventStore:
        return EventStore(self.get_db(email))
    
    def contacts(self, email: str) -> ContactStore:
        return ContactStore(self.get_db(email))
    
    def sync_state(self, email: str) -> SyncStore:
        return SyncStore(self.get_db(email))
    
    def stores(self, email: str) -> AccountStores:
        """
        All entity stores of an account on one handle.
        
        If the cache is cleared while the bundle is in use, its stores raise
        CacheUnavailableError rather than reopening a fresh database.
        """
        db = self.get_db(email)
        return AccountStores(
            db=db,
            emails=EmailStore(db),
            folders=FolderStore(db),
            events=EventStore(db),
            contacts=ContactStore(db),
            sync_state=SyncStore(db),
        )
    
    def offline_queue(self, email: str) -> OfflineQueue:
        """The account's offline queue; one instance per open database."""
        db = self.get_db(email)
        with self._lock:
            queue = self._queues.get(email)
            # A reopened database gets a fresh queue
            if queue is None or queue.db is not db:
                queue = OfflineQueue(db)
                self._queues[email] = queue
            return queue
    
    def attachment_dir(self, email: str) -> Path:
        return self.base_path / ATTACHMENT_DIR_NAME / sanitize_email(email)
    
    def attachments(self, email: str) -> AttachmentStore:
        """The account's attachment cache, sized by the configured limit."""
        max_size = self.config.cache.attachment_max_size_mb * 1024 * 1024
        return AttachmentStore(self.get_db(email), self.attachment_dir(email), max_size)
    
    def photos(self) -> PhotoStore:
        """Shared contact photo cache."""
        with self._lock:
            # Photos live in one database shared by all accounts
            if self._photo_db is None or self._photo_db.closed:
                self._photo_db = CacheDatabase(
                    self.base_path / PHOTO_DB_NAME, PhotoBase.metadata, label="photos", check_key=False
                )
            db = self._photo_db
        ttl = timedelta(days=self.config.cache.photo_ttl_days)
        return PhotoStore(db, self.base_path / PHOTO_DIR_NAME, ttl)
    
    def search(self, email: str, query: str, limit: int = DEFAULT_RESULT_LIMIT) -> List[SearchResult]:
        """Unified search over one account's emails, events and contacts."""
        if not (query or "").strip():
            return []
        db = self.get_db(email)
        return UnifiedSearch(EmailStore(db), EventStore(db), ContactStore(db)).search(query, limit)
    
    # Inventory and statistics
    
    def list_cached_accounts(self) -> List[str]:
        """Accounts with a cache database on disk."""
        accounts = [
            path.name[:-len(DB_SUFFIX)]
            for path in self.base_path.glob(f"*{DB_SUFFIX}")
            if path.name != PHOTO_DB_NAME
        ]
        return sorted(accounts)
    
    def size_bytes(self, email: str) -> int:
        """Bytes used on disk by an account's database and its WAL files."""
        return sum(path.stat().st_size for path in self._files_for(email) if path.exists())
    
    def total_size_bytes(self) -> int:
        return sum(path.stat().st_size for path in self.base_path.rglob("*") if path.is_file())
    
    def get_stats(self, email: str) -> CacheStats:
        """
        Get size and row counts for an account.
        
        An account without a cache on disk reports zeros rather than
        creating an empty database.
        """
        stats = CacheStats(email=email)
        # Do not create a file just to report zeros
        if not self.is_open(email) and not self.db_path(email).exists():
            return stats
        
        # Count cached entities
        stats.email_count = self.emails(email).count()
        stats.folder_count = self.folders(email).count()
        stats.event_count = self.events(email).count()
        stats.contact_count = self.contacts(email).count()
        stats.pending_actions = self.offline_queue(email).count()
        attachments = self.attachments(email)
        stats.attachment_count = attachments.count()
        stats.attachment_bytes = attachments.total_size()
        stats.last_sync = self.sync_state(email).last_sync()
        # Calculate size on disk
        stats.size_bytes = self.size_bytes(email)
        return stats
    
    # Maintenance
    
    def enforce_size_limit(self, email: str) -> int:
        """
        Evict the oldest cached emails if the account exceeds the size limit.
        
        Returns:
            int: Number of emails evicted
        """
        limit = self.config.cache.max_size_mb * 1024 * 1024
        size = self.size_bytes(email)
        # Within limit
        if size <= limit:
            return 0
        
        self.logger.info(f"Cache for {email} is {size} bytes, over the {limit} byte limit")
        # Remove oldest 25% of emails
        return self.emails(email).evict_oldest(EVICTION_FRACTION)
    
    def prune_attachments(self, email: str) -> int:
        """
        Trim the attachment cache to its size limit and drop stray files.
        
        Returns:
            int: Number of attachments and files removed
        """
        attachments = self.attachments(email)
        return attachments.prune() + attachments.remove_orphaned()
    
    def prune_photos(self) -> int:
        """Drop expired contact photos and image files without an index row."""
        photos = self.photos()
        return photos.prune() + photos.remove_orphaned()
    
    def prune_expired(self, email: str, now: Optional[datetime] = None) -> int:
        """
        Delete emails, events and contacts cached longer ago than the TTL.
        
        Returns:
            int: Number of rows removed
        """
        # Get expiry cutoff
        cutoff = (now or utcnow()) - timedelta(days=self.config.cache.ttl_days)
        removed = 0
        for store in (self.emails(email), self.events(email), self.contacts(email)):
            removed += store.prune_cached_before(cutoff)
        return removed
    
    # Clearing and closing
    
    def close_db(self, email: str) -> None:
        """Close an account's database, keeping its files."""
        with self._lock:
            db = self._databases.pop(email, None)
            self._queues.pop(email, None)
        if db is not None:
            db.close()
    
    def clear_cache(self, email: str) -> None:
        """
        Delete an account's cache, including its attachment files.
        
        Any sync still holding the old handle gets CacheUnavailableError on
        its next write instead of recreating the file.
        """
        with self._lock:
            db = self._databases.pop(email, None)
            self._queues.pop(email, None)
            if db is not None:
                db.close()
            for path in self._files_for(email):
                path.unlink(missing_ok=True)
            # Attachment files of the account
            shutil.rmtree(self.attachment_dir(email), ignore_errors=True)
        
        # The key is useless without the database
        if self.encryption_enabled:
            self.key_store.delete_key(email)
        
        self.logger.info(f"Cleared cache for {email}")
    
    def clear_all_caches(self) -> None:
        """Delete every account cache and the photo cache."""
        with self._lock:
            emails = set(self._databases)
        emails.update(self.list_cached_accounts())
        
        for email in emails:
            self.clear_cache(email)
        
        # Shared photo cache
        self.photos().clear()
        self.logger.info(f"Cleared {len(emails)} account caches")
    
    def close(self) -> None:
        """Close every open database."""
        with self._lock:
            databases = list(self._databases.values())
            self._databases.clear()
            self._queues.clear()
            photo_db, self._photo_db = self._photo_db, None
        
        for db in databases:
            db.close()
        if photo_db is not None:
            photo_db.close()
