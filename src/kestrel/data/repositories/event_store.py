"""
Calendar event repository for the Kestrel cache engine.
"""

from datetime import datetime
from typing import List, Optional

from sqlalchemy import select, delete

from ..models.cache import CachedEvent, EventStatus, utcnow
from .entity_store import EntityStore


class EventStore(EntityStore):
    """Cached calendar events, earliest first."""
    
    model = CachedEvent
    search_fields = ("title", "description", "location")
    sealed_fields = ("description",)
    
    def _order_by(self) -> list:
        return [CachedEvent.start_time, CachedEvent.id]
    
    def list(
        self,
        calendar_id: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: Optional[int] = None,
        offset: int = 0
    ) -> List[CachedEvent]:
        """
        List events, optionally restricted to a calendar and a time window.
        
        Args:
            calendar_id: Only events of this calendar
            start: Only events ending at or after this instant
            end: Only events starting at or before this instant
            limit: Maximum number of events
            offset: Events to skip
        
        Returns:
            List[CachedEvent]: Events ordered by start time
        """
        stmt = select(CachedEvent)
        if calendar_id:
            stmt = stmt.where(CachedEvent.calendar_id == calendar_id)
        # Overlap with the window, not containment
        if start is not None:
            stmt = stmt.where(CachedEvent.end_time >= start)
        if end is not None:
            stmt = stmt.where(CachedEvent.start_time <= end)
        
        stmt = stmt.order_by(*self._order_by()).offset(offset)
        if limit:
            stmt = stmt.limit(limit)
        
        with self.db.session() as session:
            events = session.scalars(stmt).all()
        return self._open_all(events)
    
    def list_by_date_range(self, start: datetime, end: datetime) -> List[CachedEvent]:
        """Events overlapping [start, end] across all calendars."""
        return self.list(start=start, end=end)
    
    def upcoming(self, limit: int = 10, now: Optional[datetime] = None) -> List[CachedEvent]:
        """Events not yet over and not cancelled, soonest first."""
        now = now or utcnow()
        stmt = (
            select(CachedEvent)
            .where(CachedEvent.end_time > now)
            # Cancelled events are not upcoming
            .where(CachedEvent.status != EventStatus.CANCELLED)
            .order_by(*self._order_by())
            .limit(limit)
        )
        with self.db.session() as session:
            events = session.scalars(stmt).all()
        return self._open_all(events)
    
    def delete_by_calendar(self, calendar_id: str) -> int:
        """Remove every cached event of a calendar. Returns the number removed."""
        with self.db.transaction() as session:
            removed = session.execute(
                delete(self.table).where(self.table.c.calendar_id == calendar_id)
            ).rowcount
        return removed
