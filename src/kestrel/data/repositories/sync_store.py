"""
Sync checkpoint repository for the Kestrel cache engine.
"""

from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import select, delete, func
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from ...core.cache_database import CacheDatabase
from ..models.cache import SyncState, utcnow

# Resource names used as checkpoint keys
RESOURCE_EMAILS = "emails"
RESOURCE_FOLDERS = "folders"
RESOURCE_EVENTS = "events"
RESOURCE_CONTACTS = "contacts"


class SyncStore:
    """Per-resource last-sync checkpoints for one account."""
    
    def __init__(self, db: CacheDatabase):
        self.db = db
    
    def get(self, resource: str) -> Optional[SyncState]:
        with self.db.session() as session:
            return session.get(SyncState, resource)
    
    def list(self) -> List[SyncState]:
        with self.db.session() as session:
            return session.scalars(select(SyncState).order_by(SyncState.resource)).all()
    
    def set(self, state: SyncState) -> None:
        """Insert or replace a checkpoint."""
        values = {
            "resource": state.resource,
            "last_sync": state.last_sync,
            "cursor": state.cursor,
            "metadata": state.sync_metadata or {},
        }
        stmt = sqlite_insert(SyncState.__table__).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["resource"],
            set_={key: stmt.excluded[key] for key in values if key != "resource"}
        )
        with self.db.transaction() as session:
            session.execute(stmt)
    
    def touch(self, resource: str) -> None:
        """Create the checkpoint row on the first sync attempt; no-op afterwards."""
        stmt = (
            sqlite_insert(SyncState.__table__)
            .values(resource=resource, last_sync=None, metadata={})
            # Create the row if missing, keep an existing checkpoint
            .on_conflict_do_nothing(index_elements=["resource"])
        )
        with self.db.transaction() as session:
            session.execute(stmt)
    
    def mark_synced(self, resource: str, when: Optional[datetime] = None) -> datetime:
        """
        Record a successful sync of a resource.
        
        The stored timestamp never moves backwards, even if the wall clock does.
        
        Args:
            resource: Resource name, e.g. "emails"
            when: Sync time (defaults to now)
        
        Returns:
            datetime: The checkpoint now stored
        """
        when = when or utcnow()
        with self.db.transaction() as session:
            state = session.get(SyncState, resource)
            # First sync of this resource
            if state is None:
                state = SyncState(resource=resource, sync_metadata={})
                session.add(state)
            # Never move backwards
            elif state.last_sync is not None and state.last_sync > when:
                when = state.last_sync
            state.last_sync = when
        return when
    
    def update_cursor(self, resource: str, cursor: Optional[str]) -> None:
        with self.db.transaction() as session:
            state = session.get(SyncState, resource)
            if state is None:
                session.add(SyncState(resource=resource, cursor=cursor, sync_metadata={}))
            else:
                state.cursor = cursor
    
    def needs_sync(self, resource: str, max_age: timedelta, now: Optional[datetime] = None) -> bool:
        """True if the resource was never synced or its checkpoint is older than max_age."""
        state = self.get(resource)
        # Never synced
        if state is None or state.last_sync is None:
            return True
        return (now or utcnow()) - state.last_sync > max_age
    
    def last_sync(self) -> Optional[datetime]:
        """Most recent checkpoint across all resources."""
        return self.db.scalar(select(func.max(SyncState.last_sync)))
    
    def delete(self, resource: str) -> None:
        with self.db.transaction() as session:
            session.execute(delete(SyncState.__table__).where(SyncState.__table__.c.resource == resource))
