"""
Per-account cache database handle for the Kestrel cache engine.

Wraps one SQLite file behind a SQLAlchemy engine, creates the schema on
first open, and translates storage failures into the cache error taxonomy.
"""

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from sqlalchemy import MetaData, create_engine, select
from sqlalchemy.exc import SQLAlchemyError, DBAPIError, IntegrityError, DataError
from sqlalchemy.orm import Session, sessionmaker

from ..utils.logging_setup import get_logger
from ..data.models.cache import Base, CacheMeta

logger = get_logger(__name__)

SCHEMA_VERSION = 1
BUSY_TIMEOUT_SECONDS = 30
KEY_CHECK = "key_check"
KEY_CHECK_PLAINTEXT = "kestrel-cache"


class CacheError(Exception):
    """Base error for cache operations."""
    pass


class CacheUnavailableError(CacheError):
    """Cache database is closed, corrupt or otherwise unusable."""
    pass


class CacheLockedError(CacheUnavailableError):
    """Encrypted cache could not be unlocked with the available key."""
    pass


class BatchWriteError(CacheError):
    """A batch upsert failed and was rolled back."""
    
    def __init__(self, entity_id, cause: Exception):
        super().__init__(f"Failed to write entity {entity_id!r}: {cause}")
        self.entity_id = entity_id
        self.cause = cause


def translate_error(error: SQLAlchemyError) -> CacheError:
    """Map a SQLAlchemy failure onto the cache error taxonomy."""
    if isinstance(error, (IntegrityError, DataError)):
        return CacheError(str(error))
    if isinstance(error, DBAPIError):
        return CacheUnavailableError(str(error))
    return CacheError(str(error))


class CacheDatabase:
    """
    One open SQLite cache file.
    
    Once closed the handle refuses to open new connections, so writers that
    are still holding it get CacheUnavailableError instead of silently
    recreating a deleted file.
    """
    
    def __init__(
        self,
        path: Path,
        metadata: MetaData = Base.metadata,
        cipher=None,
        label: Optional[str] = None,
        check_key: bool = True
    ):
        """
        Open (creating if needed) a cache database.
        
        Args:
            path: Database file path
            metadata: Tables to create
            cipher: Optional FieldCipher used to seal sensitive columns
            label: Name used in log messages, usually the account email
            check_key: Verify the cipher against the stored key check token
        
        Raises:
            CacheUnavailableError: If the file cannot be opened as a database
            CacheLockedError: If the cipher does not match the database
        """
        self.path = Path(path)
        self.cipher = cipher
        self.label = label or self.path.stem
        self._closed = False
        
        # Every connection goes through _connect so a closed handle stays closed
        self.engine = create_engine(f"sqlite:///{self.path}", creator=self._connect)
        self._sessions = sessionmaker(bind=self.engine, expire_on_commit=False)
        
        try:
            # Initialize database
            self._init_schema(metadata)
            if check_key:
                self._verify_key()
        except SQLAlchemyError as e:
            self.close()
            logger.error(f"Failed to open cache database {self.path}: {e}")
            raise CacheUnavailableError(f"Cannot open cache for {self.label}: {e}") from e
        except CacheError:
            self.close()
            raise
        
        logger.debug(f"Opened cache database {self.path}")
    
    @property
    def closed(self) -> bool:
        return self._closed
    
    def _connect(self) -> sqlite3.Connection:
        if self._closed:
            raise CacheUnavailableError(f"Cache database for {self.label} is closed")
        
        conn = sqlite3.connect(
            str(self.path),
            timeout=BUSY_TIMEOUT_SECONDS,
            check_same_thread=False
        )
        # WAL lets readers run alongside the sync writer
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        return conn
    
    def _init_schema(self, metadata: MetaData) -> None:
        # Create tables
        metadata.create_all(self.engine)
        with self.engine.begin() as conn:
            version = conn.exec_driver_sql("PRAGMA user_version").scalar() or 0
            if version < SCHEMA_VERSION:
                conn.exec_driver_sql(f"PRAGMA user_version = {SCHEMA_VERSION}")
    
    def _verify_key(self) -> None:
        """Check the cipher (or its absence) against the stored key check token."""
        with self.transaction() as session:
            row = session.get(CacheMeta, KEY_CHECK)
            
            # First open: store the check token for this key
            if row is None:
                if self.cipher is not None:
                    session.add(CacheMeta(key=KEY_CHECK, value=self.cipher.encrypt(KEY_CHECK_PLAINTEXT)))
                return
            
            # Encrypted file opened without a key
            if self.cipher is None:
                raise CacheLockedError(f"Cache for {self.label} is encrypted and no key is available")
            
            # Raises CacheLockedError on a wrong key
            if self.cipher.decrypt(row.value) != KEY_CHECK_PLAINTEXT:
                raise CacheLockedError(f"Cache key for {self.label} does not match")
    
    @property
    def encrypted(self) -> bool:
        return self.cipher is not None
    
    def seal(self, value: Optional[str]) -> Optional[str]:
        """Encrypt a sensitive value when encryption is enabled."""
        if self.cipher is None or value is None:
            return value
        return self.cipher.encrypt(value)
    
    def unseal(self, value: Optional[str]) -> Optional[str]:
        """Reverse seal()."""
        if self.cipher is None or value is None:
            return value
        return self.cipher.decrypt(value)
    
    def seal_bytes(self, data: bytes) -> bytes:
        """Encrypt file content when encryption is enabled."""
        if self.cipher is None:
            return data
        return self.cipher.encrypt_bytes(data)
    
    def unseal_bytes(self, data: bytes) -> bytes:
        if self.cipher is None:
            return data
        return self.cipher.decrypt_bytes(data)
    
    def _check_open(self) -> None:
        if self._closed:
            raise CacheUnavailableError(f"Cache database for {self.label} is closed")
    
    @contextmanager
    def session(self) -> Iterator[Session]:
        """Session for reads. Nothing is committed."""
        self._check_open()
        session = self._sessions()
        try:
            yield session
        except SQLAlchemyError as e:
            raise translate_error(e) from e
        finally:
            session.close()
    
    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """Session wrapped in a transaction; commits on success, rolls back on any error."""
        self._check_open()
        session = self._sessions()
        try:
            with session.begin():
                yield session
        except SQLAlchemyError as e:
            raise translate_error(e) from e
        finally:
            session.close()
    
    def scalar(self, statement):
        """Run a single read statement and return its scalar result."""
        with self.session() as session:
            return session.scalar(statement)
    
    def meta(self, key: str) -> Optional[str]:
        with self.session() as session:
            return session.scalar(select(CacheMeta.value).where(CacheMeta.key == key))
    
    def close(self) -> None:
        """Close the handle. Safe to call more than once."""
        if self._closed:
            return
        # Refuse new connections before disposing the pool
        self._closed = True
        self.engine.dispose()
        logger.debug(f"Closed cache database {self.path}")
