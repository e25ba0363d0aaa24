"""
Durable offline action queue for the Kestrel cache engine.

Writes that cannot reach the remote provider are parked here and replayed
strictly oldest first once the account is back online.
"""

import threading
from datetime import timedelta
from typing import Any, Dict, List, Optional, Set, Union

from pydantic import BaseModel
from sqlalchemy import select, delete, update, func
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from ...utils.logging_setup import get_logger
from ...core.cache_database import CacheDatabase
from ..models.cache import utcnow
from ..models.offline import ActionType, QueuedAction, encode_payload

logger = get_logger(__name__)

Payload = Union[BaseModel, Dict[str, Any], None]


class OfflineQueue:
    """
    FIFO of pending write actions for one account.
    
    Ordering is by creation time, ties broken by id. dequeue() removes and
    returns the head in a single statement, so concurrent drainers never
    receive the same action.
    """
    
    def __init__(self, db: CacheDatabase):
        """
        Initialize the queue.
        
        Args:
            db: Open cache database of the account
        """
        self.db = db
        self.table = QueuedAction.__table__
        # Held by whoever replays this queue so drains do not interleave
        self.drain_lock = threading.Lock()
        # Dequeued actions not yet settled, and those cancelled while out
        self._in_flight: Dict[int, str] = {}
        self._cancelled: Set[int] = set()
        self._flight_lock = threading.Lock()
        self.logger = logger
    
    def _fifo_order(self) -> list:
        return [self.table.c.created_at, self.table.c.id]
    
    @staticmethod
    def _to_action(row) -> QueuedAction:
        return QueuedAction(**dict(row))
    
    def enqueue(self, action_type: ActionType, resource_id: str, payload: Payload = None) -> QueuedAction:
        """
        Append an action to the queue.
        
        Args:
            action_type: Kind of write
            resource_id: Id of the email, event, contact or draft concerned
            payload: Typed payload for the action type, a dict of its fields, or None
        
        Returns:
            QueuedAction: The stored action with its id
        
        Raises:
            TypeError: If the payload does not belong to the action type
            CacheUnavailableError: If the database is closed or unusable
        """
        action_type = ActionType(action_type)
        values = {
            "type": action_type,
            "resource_id": resource_id or "",
            "payload": encode_payload(action_type, payload),
            "created_at": utcnow(),
            "attempts": 0,
            "last_error": None,
        }
        
        with self.db.transaction() as session:
            action_id = session.execute(self.table.insert().values(**values)).inserted_primary_key[0]
        
        self.logger.debug(f"Queued {action_type.value} for {resource_id} as action {action_id}")
        return QueuedAction(id=action_id, **values)
    
    def dequeue(self) -> Optional[QueuedAction]:
        """
        Remove and return the oldest action, or None if the queue is empty.
        """
        # Delete-and-return the head in one statement
        oldest = select(self.table.c.id).order_by(*self._fifo_order()).limit(1).scalar_subquery()
        stmt = delete(self.table).where(self.table.c.id == oldest).returning(*self.table.c)
        
        with self.db.transaction() as session:
            row = session.execute(stmt).mappings().first()
        
        if row is None:
            return None
        action = self._to_action(row)
        # Track it until the replayer settles or restores it
        with self._flight_lock:
            self._in_flight[action.id] = action.resource_id
        return action
    
    def peek(self) -> Optional[QueuedAction]:
        """Oldest action without removing it."""
        stmt = select(self.table).order_by(*self._fifo_order()).limit(1)
        with self.db.session() as session:
            row = session.execute(stmt).mappings().first()
        return self._to_action(row) if row else None
    
    def list(self) -> List[QueuedAction]:
        """All pending actions in replay order."""
        stmt = select(self.table).order_by(*self._fifo_order())
        with self.db.session() as session:
            rows = session.execute(stmt).mappings().all()
        return [self._to_action(row) for row in rows]
    
    def count(self) -> int:
        return self.db.scalar(select(func.count()).select_from(self.table)) or 0
    
    def has_pending_actions(self) -> bool:
        return self.db.scalar(select(self.table.c.id).limit(1)) is not None
    
    def mark_failed(self, action_id: int, error: Union[Exception, str]) -> bool:
        """
        Record a failed replay: bump the attempt count and keep the error text.
        
        The action stays queued; giving up on it is the caller's decision.
        
        Returns:
            bool: True if the action is still queued and was updated
        """
        stmt = (
            update(self.table)
            .where(self.table.c.id == action_id)
            .values(attempts=self.table.c.attempts + 1, last_error=str(error))
        )
        with self.db.transaction() as session:
            updated = session.execute(stmt).rowcount
        return updated > 0
    
    def settle(self, action: QueuedAction) -> None:
        """Forget a dequeued action that was replayed or dropped."""
        with self._flight_lock:
            self._in_flight.pop(action.id, None)
            self._cancelled.discard(action.id)
    
    def restore(self, action: QueuedAction) -> bool:
        """
        Put a dequeued action back with its original id and creation time,
        so it keeps its place at the head of the queue.
        
        An action whose resource was cancelled while it was out of the
        queue is not put back.
        
        Returns:
            bool: True if the action is queued again
        """
        values = {
            "id": action.id,
            "type": action.type,
            "resource_id": action.resource_id,
            "payload": action.payload,
            "created_at": action.created_at,
            "attempts": action.attempts or 0,
            "last_error": action.last_error,
        }
        stmt = sqlite_insert(self.table).values(**values).on_conflict_do_nothing(index_elements=["id"])
        
        # A cancel must not slip in between the check and the insert
        with self._flight_lock:
            self._in_flight.pop(action.id, None)
            if action.id in self._cancelled:
                self._cancelled.discard(action.id)
                self.logger.debug(f"Not restoring cancelled action {action.id} for {action.resource_id}")
                return False
            with self.db.transaction() as session:
                session.execute(stmt)
        return True
    
    def remove(self, action_id: int) -> bool:
        with self.db.transaction() as session:
            removed = session.execute(delete(self.table).where(self.table.c.id == action_id)).rowcount
        return removed > 0
    
    def clear(self) -> int:
        with self._flight_lock:
            self._cancelled.update(self._in_flight)
            with self.db.transaction() as session:
                removed = session.execute(delete(self.table)).rowcount
        return removed
    
    def remove_stale(self, max_age: timedelta) -> int:
        """
        Delete actions older than max_age.
        
        Returns:
            int: Number of actions removed
        """
        # Get age cutoff
        cutoff = utcnow() - max_age
        with self.db.transaction() as session:
            removed = session.execute(
                delete(self.table).where(self.table.c.created_at < cutoff)
            ).rowcount
        if removed:
            self.logger.warning(f"Discarded {removed} stale offline actions older than {max_age}")
        return removed
    
    def remove_by_resource_id(self, resource_id: str) -> int:
        """
        Cancel every pending action for a resource, including one that is
        being replayed right now.
        
        Returns:
            int: Number of actions cancelled
        """
        with self._flight_lock:
            # Actions being replayed right now are dropped when they come back
            in_flight = [aid for aid, rid in self._in_flight.items() if rid == resource_id]
            self._cancelled.update(in_flight)
            with self.db.transaction() as session:
                removed = session.execute(
                    delete(self.table).where(self.table.c.resource_id == resource_id)
                ).rowcount
        return removed + len(in_flight)
