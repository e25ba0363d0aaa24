"""
Contact photo repository for the Kestrel cache engine.

Photo bytes are written to files; a small shared database indexes them.
"""

import hashlib
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional, Tuple

from sqlalchemy import select, delete, func

from ...utils.logging_setup import get_logger
from ...core.cache_database import CacheDatabase
from ..models.cache import utcnow
from ..models.photos import CachedPhoto

logger = get_logger(__name__)

DEFAULT_PHOTO_TTL = timedelta(days=30)
ORPHAN_GRACE_SECONDS = 60


@dataclass
class PhotoStats:
    """Usage of the shared photo cache."""
    count: int = 0
    total_size: int = 0
    ttl_days: int = 0
    oldest: Optional[datetime] = None
    newest: Optional[datetime] = None


class PhotoStore:
    """Contact photos with a time-to-live."""
    
    def __init__(self, db: CacheDatabase, photos_dir: Path, ttl: timedelta = DEFAULT_PHOTO_TTL):
        """
        Initialize the photo store.
        
        Args:
            db: Open photo index database
            photos_dir: Directory holding the image files
            ttl: How long a photo stays valid after it was cached
        """
        self.db = db
        self.photos_dir = Path(photos_dir)
        self.photos_dir.mkdir(parents=True, exist_ok=True)
        self.ttl = ttl
        self.logger = logger
    
    def _path_for(self, contact_id: str) -> Path:
        # Contact ids may contain characters unsafe in file names
        digest = hashlib.sha256(contact_id.encode("utf-8")).hexdigest()[:32]
        return self.photos_dir / digest
    
    def _remove_file(self, local_path: Optional[str]) -> None:
        if local_path:
            Path(local_path).unlink(missing_ok=True)
    
    def put(self, contact_id: str, content_type: str, data: bytes) -> None:
        """Cache a photo, replacing any previous one for the contact."""
        path = self._path_for(contact_id)
        # Write file first, then index it
        path.write_bytes(data)
        
        now = utcnow()
        with self.db.transaction() as session:
            session.merge(CachedPhoto(
                contact_id=contact_id,
                content_type=content_type,
                size=len(data),
                local_path=str(path),
                cached_at=now,
                accessed_at=now,
            ))
    
    def get(self, contact_id: str) -> Optional[Tuple[str, bytes]]:
        """
        Get a cached photo.
        
        Expired photos and photos whose file disappeared are removed.
        
        Returns:
            Optional[Tuple]: (content_type, data), or None if not cached
        """
        now = utcnow()
        with self.db.transaction() as session:
            photo = session.get(CachedPhoto, contact_id)
            if photo is None:
                return None
            
            path = Path(photo.local_path)
            # Expired or file gone
            if now - photo.cached_at > self.ttl or not path.exists():
                session.delete(photo)
                self._remove_file(photo.local_path)
                return None
            
            # Update accessed time
            photo.accessed_at = now
            content_type = photo.content_type
        
        return content_type, path.read_bytes()
    
    def is_valid(self, contact_id: str) -> bool:
        """True if a photo is cached for the contact and has not expired."""
        cached_at = self.db.scalar(select(CachedPhoto.cached_at).where(CachedPhoto.contact_id == contact_id))
        return cached_at is not None and utcnow() - cached_at <= self.ttl
    
    def delete(self, contact_id: str) -> bool:
        with self.db.transaction() as session:
            photo = session.get(CachedPhoto, contact_id)
            if photo is None:
                return False
            session.delete(photo)
        self._remove_file(photo.local_path)
        return True
    
    def prune(self) -> int:
        """
        Remove expired photos.
        
        Returns:
            int: Number of photos removed
        """
        # Get expiry cutoff
        cutoff = utcnow() - self.ttl
        with self.db.transaction() as session:
            expired = session.scalars(select(CachedPhoto).where(CachedPhoto.cached_at < cutoff)).all()
            paths = [photo.local_path for photo in expired]
            session.execute(delete(CachedPhoto.__table__).where(CachedPhoto.__table__.c.cached_at < cutoff))
        
        # Remove files after the rows are gone
        for path in paths:
            self._remove_file(path)
        if paths:
            self.logger.info(f"Pruned {len(paths)} expired contact photos")
        return len(paths)
    
    def clear(self) -> int:
        with self.db.transaction() as session:
            paths = session.scalars(select(CachedPhoto.local_path)).all()
            session.execute(delete(CachedPhoto.__table__))
        for path in paths:
            self._remove_file(path)
        return len(paths)
    
    def count(self) -> int:
        return self.db.scalar(select(func.count()).select_from(CachedPhoto.__table__)) or 0
    
    def total_size(self) -> int:
        return self.db.scalar(select(func.sum(CachedPhoto.size))) or 0
    
    def remove_orphaned(self) -> int:
        """
        Delete image files that no index row points at.
        
        Files written in the last minute are left alone, since their row
        may not be committed yet.
        
        Returns:
            int: Number of files removed
        """
        with self.db.session() as session:
            known = {Path(path).name for path in session.scalars(select(CachedPhoto.local_path)).all()}
        
        cutoff = time.time() - ORPHAN_GRACE_SECONDS
        removed = 0
        for path in self.photos_dir.iterdir():
            if not path.is_file() or path.name in known or path.stat().st_mtime > cutoff:
                continue
            path.unlink(missing_ok=True)
            removed += 1
        if removed:
            self.logger.info(f"Removed {removed} orphaned contact photo files")
        return removed
    
    def get_stats(self) -> PhotoStats:
        with self.db.session() as session:
            count, total, oldest, newest = session.execute(
                select(
                    func.count(),
                    func.coalesce(func.sum(CachedPhoto.size), 0),
                    func.min(CachedPhoto.cached_at),
                    func.max(CachedPhoto.cached_at),
                ).select_from(CachedPhoto.__table__)
            ).one()
        return PhotoStats(
            count=count,
            total_size=total,
            ttl_days=self.ttl.days,
            oldest=oldest,
            newest=newest,
        )
