"""
Generic persistence for one cached entity kind.

Subclasses pick the model, the searchable and sealed columns, and the list
order; the upsert, batch, lookup, search and delete logic lives here.
"""

from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence

from sqlalchemy import select, delete, func, or_
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError, DBAPIError, IntegrityError, DataError

from ...utils.logging_setup import get_logger
from ...core.cache_database import (
    CacheDatabase, CacheError, CacheUnavailableError, BatchWriteError
)
from ..models.cache import utcnow

logger = get_logger(__name__)

DEFAULT_SEARCH_LIMIT = 50


def escape_like(value: str) -> str:
    """Escape LIKE wildcards so user input matches literally."""
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def column_default(column) -> Any:
    """Python-side default of a column, or None."""
    default = column.default
    if default is None:
        return None
    if default.is_scalar:
        return default.arg
    if default.is_callable:
        return default.arg(None)
    return None


class EntityStore:
    """
    Base store for one model in an account's cache database.
    
    Entities are the SQLAlchemy model instances themselves. Instances handed
    back are detached from any session and safe to pass between threads.
    """
    
    model = None
    id_field = "id"
    search_fields: Sequence[str] = ()
    sealed_fields: Sequence[str] = ()
    
    def __init__(self, db: CacheDatabase):
        """
        Initialize the store.
        
        Args:
            db: Open cache database of the account
        """
        self.db = db
        self.logger = logger
    
    @property
    def table(self):
        return self.model.__table__
    
    def _id_column(self):
        return getattr(self.model, self.id_field)
    
    def _order_by(self) -> list:
        return [self._id_column()]
    
    def _values(self, entity, now: datetime) -> Dict[str, Any]:
        """Column values for an upsert, with defaults filled and sealed fields encrypted."""
        values = {}
        for column in self.table.columns:
            value = getattr(entity, column.key, None)
            if value is None:
                # Fill Python-side defaults the upsert would otherwise skip
                value = column_default(column)
            values[column.key] = value
        
        if not values.get(self.id_field):
            raise CacheError(f"{self.model.__name__} has no {self.id_field}")
        
        # Stamp write time
        if "cached_at" in values:
            values["cached_at"] = now
        # Encrypt sensitive fields
        for field in self.sealed_fields:
            values[field] = self.db.seal(values[field])
        return values
    
    def _upsert(self, values: Dict[str, Any]):
        stmt = sqlite_insert(self.table).values(**values)
        # Overwrite every column except the id
        changes = {key: stmt.excluded[key] for key in values if key != self.id_field}
        return stmt.on_conflict_do_update(index_elements=[self.id_field], set_=changes)
    
    def _open(self, entity):
        """Decrypt sealed fields of an entity read from the database."""
        if entity is not None and self.db.encrypted:
            for field in self.sealed_fields:
                setattr(entity, field, self.db.unseal(getattr(entity, field)))
        return entity
    
    def _open_all(self, entities) -> list:
        return [self._open(entity) for entity in entities]
    
    def put(self, entity) -> None:
        """
        Insert or overwrite an entity by id, refreshing its cached_at.
        
        Raises:
            CacheError: If the entity cannot be written
        """
        values = self._values(entity, utcnow())
        with self.db.transaction() as session:
            session.execute(self._upsert(values))
    
    def put_batch(self, entities: Iterable) -> int:
        """
        Upsert several entities in one transaction.
        
        Args:
            entities: Entities to write
        
        Returns:
            int: Number of entities written
        
        Raises:
            BatchWriteError: If any entity fails; nothing from the batch is kept
            CacheUnavailableError: If the database is closed or unusable
        """
        entities = list(entities)
        if not entities:
            return 0
        
        now = utcnow()
        with self.db.transaction() as session:
            for entity in entities:
                entity_id = getattr(entity, self.id_field, None)
                try:
                    session.execute(self._upsert(self._values(entity, now)))
                # Closed handle, not a bad entity
                except CacheUnavailableError:
                    raise
                except DBAPIError as e:
                    # Only row-level errors are blamed on the entity
                    if not isinstance(e, (IntegrityError, DataError)):
                        raise
                    self.logger.error(f"Batch write to {self.table.name} failed at {entity_id}: {e}")
                    raise BatchWriteError(entity_id, e) from e
                except (SQLAlchemyError, CacheError, TypeError, ValueError) as e:
                    self.logger.error(f"Batch write to {self.table.name} failed at {entity_id}: {e}")
                    raise BatchWriteError(entity_id, e) from e
        
        return len(entities)
    
    def get(self, entity_id):
        """Point lookup. Returns None when the entity is not cached."""
        with self.db.session() as session:
            entity = session.get(self.model, entity_id)
        return self._open(entity)
    
    def list(self, limit: Optional[int] = None, offset: int = 0) -> List:
        """All entities in the store's display order."""
        stmt = select(self.model).order_by(*self._order_by()).offset(offset)
        if limit is not None:
            stmt = stmt.limit(limit)
        with self.db.session() as session:
            entities = session.scalars(stmt).all()
        return self._open_all(entities)
    
    def _searchable_fields(self) -> List[str]:
        # Ciphertext cannot be matched
        if self.db.encrypted:
            return [f for f in self.search_fields if f not in self.sealed_fields]
        return list(self.search_fields)
    
    def _token_clause(self, token: str):
        pattern = f"%{escape_like(token)}%"
        return or_(*[
            getattr(self.model, field).ilike(pattern, escape="\\")
            for field in self._searchable_fields()
        ])
    
    def text_clauses(self, text: str) -> list:
        """One clause per whitespace token; each must match some searchable field."""
        return [self._token_clause(token) for token in text.split()]
    
    def search(self, query: str, limit: Optional[int] = None) -> List:
        """
        Case-insensitive token search across the searchable fields.
        
        Args:
            query: Free text; every word must appear in at least one field
            limit: Maximum results (default 50)
        
        Returns:
            List of matching entities in display order
        """
        clauses = self.text_clauses(query or "")
        # Blank query
        if not clauses:
            return []
        
        stmt = (
            select(self.model)
            .where(*clauses)
            .order_by(*self._order_by())
            .limit(limit or DEFAULT_SEARCH_LIMIT)
        )
        with self.db.session() as session:
            entities = session.scalars(stmt).all()
        return self._open_all(entities)
    
    def delete(self, entity_id) -> bool:
        """Delete by id. Returns False if nothing was cached under that id."""
        with self.db.transaction() as session:
            removed = session.execute(
                delete(self.table).where(self.table.c[self.id_field] == entity_id)
            ).rowcount
        return removed > 0
    
    def count(self) -> int:
        return self.db.scalar(select(func.count()).select_from(self.table)) or 0
    
    def prune_cached_before(self, cutoff: datetime) -> int:
        """Delete entities last cached before cutoff. Returns the number removed."""
        with self.db.transaction() as session:
            removed = session.execute(
                delete(self.table).where(self.table.c.cached_at < cutoff)
            ).rowcount
        if removed:
            self.logger.info(f"Pruned {removed} expired rows from {self.table.name}")
        return removed
