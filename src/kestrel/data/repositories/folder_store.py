"""
Folder repository for the Kestrel cache engine.
"""

from typing import Optional

from sqlalchemy import select, update, func, case

from ..models.cache import CachedFolder, FolderType
from .entity_store import EntityStore

# Display order of the well-known system folders; everything else follows by name
CANONICAL_FOLDER_ORDER = (
    FolderType.INBOX,
    FolderType.DRAFTS,
    FolderType.SENT,
    FolderType.TRASH,
    FolderType.SPAM,
)


class FolderStore(EntityStore):
    """Cached mail folders."""
    
    model = CachedFolder
    search_fields = ("name",)
    
    def _order_by(self) -> list:
        # System folders first, in canonical order
        rank = case(
            *[(CachedFolder.type == folder_type, position)
              for position, folder_type in enumerate(CANONICAL_FOLDER_ORDER)],
            else_=len(CANONICAL_FOLDER_ORDER)
        )
        return [rank, CachedFolder.name, CachedFolder.id]
    
    def get_by_type(self, folder_type: FolderType) -> Optional[CachedFolder]:
        """
        Get the canonical folder for a role, e.g. the inbox.
        
        Returns:
            The first folder of that type by name, or None if there is none
        """
        stmt = (
            select(CachedFolder)
            .where(CachedFolder.type == folder_type)
            .order_by(CachedFolder.name, CachedFolder.id)
            .limit(1)
        )
        with self.db.session() as session:
            return session.scalars(stmt).first()
    
    def increment_unread(self, folder_id: str, delta: int) -> bool:
        """
        Adjust a folder's unread counter in place; never goes below zero.
        
        Returns:
            bool: True if the folder exists
        """
        stmt = (
            update(self.table)
            .where(self.table.c.id == folder_id)
            # Single UPDATE so concurrent adjustments do not race
            .values(unread_count=func.max(func.coalesce(self.table.c.unread_count, 0) + delta, 0))
        )
        with self.db.transaction() as session:
            updated = session.execute(stmt).rowcount
        return updated > 0
    
    def total_unread(self) -> int:
        return self.db.scalar(select(func.sum(self.table.c.unread_count))) or 0
