"""
Email repository for the Kestrel cache engine.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from sqlalchemy import select, update, delete, func, or_, cast, Text

from ...core.search import SearchQuery
from ..models.cache import CachedEmail
from .entity_store import EntityStore, escape_like, DEFAULT_SEARCH_LIMIT


@dataclass
class EmailListOptions:
    """Filters for listing cached emails."""
    folder_id: Optional[str] = None
    thread_id: Optional[str] = None
    unread_only: bool = False
    starred_only: bool = False
    since: Optional[datetime] = None
    before: Optional[datetime] = None
    limit: int = 50
    offset: int = 0


def _contains(column, value: str):
    return column.ilike(f"%{escape_like(value)}%", escape="\\")


class EmailStore(EntityStore):
    """Cached emails, newest first."""
    
    model = CachedEmail
    search_fields = ("subject", "snippet", "from_name", "from_email", "body_text")
    sealed_fields = ("body_html", "body_text")
    
    def _order_by(self) -> list:
        return [CachedEmail.date.desc(), CachedEmail.id]
    
    def list(self, options: Optional[EmailListOptions] = None) -> List[CachedEmail]:
        """
        List cached emails matching the given filters.
        
        Args:
            options: Filters and paging; defaults to the 50 newest emails
        
        Returns:
            List[CachedEmail]: Emails ordered by date, newest first
        """
        options = options or EmailListOptions()
        stmt = select(CachedEmail)
        
        # Apply filters
        if options.folder_id:
            stmt = stmt.where(CachedEmail.folder_id == options.folder_id)
        if options.thread_id:
            stmt = stmt.where(CachedEmail.thread_id == options.thread_id)
        if options.unread_only:
            stmt = stmt.where(CachedEmail.unread.is_(True))
        if options.starred_only:
            stmt = stmt.where(CachedEmail.starred.is_(True))
        if options.since is not None:
            stmt = stmt.where(CachedEmail.date >= options.since)
        if options.before is not None:
            stmt = stmt.where(CachedEmail.date < options.before)
        
        # Newest first, then paging
        stmt = stmt.order_by(*self._order_by()).offset(options.offset)
        if options.limit:
            stmt = stmt.limit(options.limit)
        
        with self.db.session() as session:
            emails = session.scalars(stmt).all()
        return self._open_all(emails)
    
    def search_query(self, query: SearchQuery, limit: Optional[int] = None) -> List[CachedEmail]:
        """
        Search with a parsed operator query (from:, is:unread, after: ...).
        
        Args:
            query: Parsed query
            limit: Maximum results (default 50)
        
        Returns:
            List[CachedEmail]: Matching emails, newest first
        """
        if query.is_empty():
            return []
        
        # Free text words, then operators
        conditions = self.text_clauses(query.text)
        if query.from_:
            conditions.append(or_(
                _contains(CachedEmail.from_email, query.from_),
                _contains(CachedEmail.from_name, query.from_),
            ))
        # Recipients are stored as a JSON list
        if query.to:
            conditions.append(_contains(cast(CachedEmail.to_addrs, Text), query.to))
        if query.subject:
            conditions.append(_contains(CachedEmail.subject, query.subject))
        if query.in_folder:
            conditions.append(func.lower(CachedEmail.folder_id) == query.in_folder.lower())
        if query.has_attachment:
            conditions.append(CachedEmail.has_attachments.is_(True))
        if query.is_unread is not None:
            conditions.append(CachedEmail.unread.is_(query.is_unread))
        if query.is_starred:
            conditions.append(CachedEmail.starred.is_(True))
        if query.after is not None:
            conditions.append(CachedEmail.date >= query.after)
        if query.before is not None:
            conditions.append(CachedEmail.date < query.before)
        
        stmt = (
            select(CachedEmail)
            .where(*conditions)
            .order_by(*self._order_by())
            .limit(limit or DEFAULT_SEARCH_LIMIT)
        )
        with self.db.session() as session:
            emails = session.scalars(stmt).all()
        return self._open_all(emails)
    
    def update_flags(
        self,
        email_id: str,
        unread: Optional[bool] = None,
        starred: Optional[bool] = None
    ) -> bool:
        """
        Change the unread/starred flags of a cached email.
        
        Returns:
            bool: True if the email was cached and updated
        """
        changes = {}
        if unread is not None:
            changes["unread"] = unread
        if starred is not None:
            changes["starred"] = starred
        # Nothing to update
        if not changes:
            return False
        
        with self.db.transaction() as session:
            updated = session.execute(
                update(self.table).where(self.table.c.id == email_id).values(**changes)
            ).rowcount
        return updated > 0
    
    def count_unread(self, folder_id: Optional[str] = None) -> int:
        stmt = select(func.count()).select_from(self.table).where(self.table.c.unread.is_(True))
        if folder_id:
            stmt = stmt.where(self.table.c.folder_id == folder_id)
        return self.db.scalar(stmt) or 0
    
    def delete_older_than(self, cutoff: datetime) -> int:
        """Delete emails dated before cutoff. Returns the number removed."""
        with self.db.transaction() as session:
            removed = session.execute(
                delete(self.table).where(self.table.c.date < cutoff)
            ).rowcount
        return removed

    def evict_oldest(self, fraction: float = 0.25) -> int:
        """
        Drop the least recently cached share of emails.
        
        Args:
            fraction: Share of cached emails to drop
        
        Returns:
            int: Number of emails removed
        """
        total = self.count()
        target = int(total * fraction)
        if target <= 0:
            return 0
        
        # Least recently cached first
        oldest = (
            select(self.table.c.id)
            .order_by(self.table.c.cached_at, self.table.c.date)
            .limit(target)
        )
        with self.db.transaction() as session:
            removed = session.execute(
                delete(self.table).where(self.table.c.id.in_(oldest.scalar_subquery()))
            ).rowcount
        self.logger.info(f"Evicted {removed} of {total} cached emails")
        return removed
