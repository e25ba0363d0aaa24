"""
Attachment repository for the Kestrel cache engine.

Attachment bytes live in files named by the SHA-256 of their content, laid
out as ``<dir>/<first two hex chars>/<hash>``. The account database keeps
one row per attachment and counts references to each file.
"""

import hashlib
import os
import tempfile
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import BinaryIO, List, Optional, Union

from sqlalchemy import select, delete, func

from ...utils.logging_setup import get_logger
from ...core.cache_database import CacheDatabase
from ..models.cache import CachedAttachment, utcnow

logger = get_logger(__name__)

DEFAULT_ATTACHMENT_MAX_SIZE = 100 * 1024 * 1024
# Pruning stops once the cache is back under this share of its limit
PRUNE_TARGET_RATIO = 0.8
TEMP_PREFIX = ".tmp-"
# Files younger than this may belong to a put that has not committed yet
ORPHAN_GRACE_SECONDS = 60


@dataclass
class AttachmentStats:
    """Usage of one account's attachment cache."""
    count: int = 0
    total_size: int = 0
    max_size: int = 0
    usage_percent: float = 0.0
    oldest: Optional[datetime] = None
    newest: Optional[datetime] = None


class AttachmentStore:
    """
    Content-addressed attachment cache with least-recently-used eviction.
    
    When the account's cache is encrypted the files are sealed with the
    same key as the database fields; hashes are always taken over the
    plain content.
    """
    
    def __init__(
        self,
        db: CacheDatabase,
        attachments_dir: Path,
        max_size: int = DEFAULT_ATTACHMENT_MAX_SIZE
    ):
        """
        Initialize the attachment store.
        
        Args:
            db: Open cache database of the account
            attachments_dir: Directory holding the attachment files
            max_size: Size limit in bytes enforced by prune()
        """
        self.db = db
        self.attachments_dir = Path(attachments_dir)
        self.attachments_dir.mkdir(parents=True, exist_ok=True)
        self.max_size = max_size
        self.table = CachedAttachment.__table__
        self.logger = logger
    
    def _path_for(self, digest: str) -> Path:
        return self.attachments_dir / digest[:2] / digest
    
    def _references(self, session, digest: str) -> int:
        return session.scalar(
            select(func.count()).select_from(self.table).where(self.table.c.hash == digest)
        ) or 0
    
    def _write_file(self, digest: str, data: bytes) -> Path:
        path = self._path_for(digest)
        # Content already cached under this hash
        if path.exists():
            return path
        
        path.parent.mkdir(parents=True, exist_ok=True)
        # Write to a temp file and rename so readers never see a partial file
        fd, temp_name = tempfile.mkstemp(prefix=TEMP_PREFIX, dir=self.attachments_dir)
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(self.db.seal_bytes(data))
            os.replace(temp_name, path)
        except BaseException:
            Path(temp_name).unlink(missing_ok=True)
            raise
        return path
    
    def put(self, attachment: CachedAttachment, content: Union[bytes, BinaryIO]) -> CachedAttachment:
        """
        Cache an attachment's content, replacing any earlier copy with the same id.
        
        Args:
            attachment: Row to store; id and email_id must be set
            content: Attachment bytes or a binary file to read them from
        
        Returns:
            CachedAttachment: The stored row with hash, size and path filled in
        """
        data = content if isinstance(content, bytes) else content.read()
        # Hash the plain content
        digest = hashlib.sha256(data).hexdigest()
        path = self._write_file(digest, data)
        
        now = utcnow()
        stored = CachedAttachment(
            id=attachment.id,
            email_id=attachment.email_id,
            filename=attachment.filename or "",
            content_type=attachment.content_type,
            size=len(data),
            hash=digest,
            local_path=str(path),
            cached_at=now,
            accessed_at=now,
        )
        
        with self.db.transaction() as session:
            # Replacing an id may leave its old file unreferenced
            previous = session.scalar(select(self.table.c.hash).where(self.table.c.id == attachment.id))
            session.merge(stored)
            session.flush()
            orphaned = previous not in (None, digest) and not self._references(session, previous)
        
        if orphaned:
            self._path_for(previous).unlink(missing_ok=True)
        return stored
    
    def get(self, attachment_id: str) -> Optional[CachedAttachment]:
        """
        Get an attachment row and mark it as recently used.
        
        Rows whose file disappeared are removed and reported as not cached.
        """
        with self.db.transaction() as session:
            attachment = session.get(CachedAttachment, attachment_id)
            if attachment is None:
                return None
            if not Path(attachment.local_path).exists():
                session.delete(attachment)
                self.logger.warning(f"Attachment file for {attachment_id} is missing, dropping its row")
                return None
            # Update accessed time
            attachment.accessed_at = utcnow()
        return attachment
    
    def get_by_hash(self, digest: str) -> Optional[CachedAttachment]:
        stmt = select(CachedAttachment).where(CachedAttachment.hash == digest).limit(1)
        with self.db.session() as session:
            return session.scalars(stmt).first()
    
    def read(self, attachment_id: str) -> Optional[bytes]:
        """
        Content of a cached attachment.
        
        Returns:
            Optional[bytes]: The attachment bytes, or None if not cached
        
        Raises:
            CacheLockedError: If the file cannot be decrypted with the current key
        """
        attachment = self.get(attachment_id)
        if attachment is None:
            return None
        return self.db.unseal_bytes(Path(attachment.local_path).read_bytes())
    
    def list_by_email(self, email_id: str) -> List[CachedAttachment]:
        stmt = (
            select(CachedAttachment)
            .where(CachedAttachment.email_id == email_id)
            .order_by(CachedAttachment.filename, CachedAttachment.id)
        )
        with self.db.session() as session:
            return list(session.scalars(stmt).all())
    
    def _delete_rows(self, condition) -> int:
        """Delete matching rows, then any file no remaining row points at."""
        with self.db.transaction() as session:
            digests = set(session.scalars(select(self.table.c.hash).where(condition)).all())
            removed = session.execute(delete(self.table).where(condition)).rowcount
            # Files shared with other rows stay
            unreferenced = [digest for digest in digests if not self._references(session, digest)]
        
        for digest in unreferenced:
            self._path_for(digest).unlink(missing_ok=True)
        return removed
    
    def delete(self, attachment_id: str) -> bool:
        return self._delete_rows(self.table.c.id == attachment_id) > 0
    
    def delete_by_email(self, email_id: str) -> int:
        """Remove every attachment of an email. Returns the number removed."""
        return self._delete_rows(self.table.c.email_id == email_id)
    
    def count(self) -> int:
        return self.db.scalar(select(func.count()).select_from(self.table)) or 0
    
    def total_size(self) -> int:
        return self.db.scalar(select(func.sum(self.table.c.size))) or 0
    
    def evict(self, bytes_to_free: int) -> int:
        """
        Remove least recently used attachments until bytes_to_free is reached.
        
        Returns:
            int: Number of attachments removed
        """
        if bytes_to_free <= 0:
            return 0
        
        stmt = select(self.table.c.id, self.table.c.size).order_by(self.table.c.accessed_at, self.table.c.id)
        with self.db.session() as session:
            rows = session.execute(stmt).all()
        
        victims = []
        freed = 0
        # Pick victims oldest access first
        for attachment_id, size in rows:
            if freed >= bytes_to_free:
                break
            victims.append(attachment_id)
            freed += size or 0
        
        if not victims:
            return 0
        removed = self._delete_rows(self.table.c.id.in_(victims))
        self.logger.info(f"Evicted {removed} cached attachments ({freed} bytes)")
        return removed
    
    def prune(self) -> int:
        """
        Bring the cache back under its size limit.
        
        Once over max_size, least recently used attachments are removed
        until the total is at most 80% of the limit.
        
        Returns:
            int: Number of attachments removed
        """
        total = self.total_size()
        if total <= self.max_size:
            return 0
        return self.evict(total - int(self.max_size * PRUNE_TARGET_RATIO))
    
    def remove_orphaned(self) -> int:
        """
        Delete files under the attachment directory that no row points at.
        
        Returns:
            int: Number of files removed
        """
        with self.db.session() as session:
            known = set(session.scalars(select(self.table.c.hash).distinct()).all())
        
        cutoff = time.time() - ORPHAN_GRACE_SECONDS
        removed = 0
        for path in list(self.attachments_dir.rglob("*")):
            if not path.is_file() or path.name in known:
                continue
            if path.stat().st_mtime > cutoff:
                continue
            path.unlink(missing_ok=True)
            removed += 1
        if removed:
            self.logger.info(f"Removed {removed} orphaned attachment files")
        return removed
    
    def clear(self) -> int:
        with self.db.transaction() as session:
            digests = set(session.scalars(select(self.table.c.hash)).all())
            removed = session.execute(delete(self.table)).rowcount
        for digest in digests:
            self._path_for(digest).unlink(missing_ok=True)
        return removed
    
    def get_stats(self) -> AttachmentStats:
        """Count, size, usage of the limit and the cached_at range."""
        with self.db.session() as session:
            count, total, oldest, newest = session.execute(
                select(
                    func.count(),
                    func.coalesce(func.sum(self.table.c.size), 0),
                    func.min(CachedAttachment.cached_at),
                    func.max(CachedAttachment.cached_at),
                ).select_from(self.table)
            ).one()
        
        return AttachmentStats(
            count=count,
            total_size=total,
            max_size=self.max_size,
            usage_percent=total / self.max_size * 100 if self.max_size else 0.0,
            oldest=oldest,
            newest=newest,
        )
