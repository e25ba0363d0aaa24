"""
Contact repository for the Kestrel cache engine.
"""

import json
from typing import List, Optional

from sqlalchemy import select, func, cast, Text

from ..models.cache import CachedContact
from .entity_store import EntityStore, escape_like


class ContactStore(EntityStore):
    """Cached contacts, alphabetical."""
    
    model = CachedContact
    search_fields = ("display_name", "given_name", "surname", "email", "phone", "company")
    sealed_fields = ("notes",)
    
    def _order_by(self) -> list:
        return [
            CachedContact.display_name,
            CachedContact.given_name,
            CachedContact.surname,
            CachedContact.id,
        ]
    
    def list(
        self,
        limit: Optional[int] = None,
        offset: int = 0,
        group: Optional[str] = None
    ) -> List[CachedContact]:
        """
        Contacts in alphabetical order, optionally only members of one group.
        
        Args:
            limit: Maximum number of contacts
            offset: Contacts to skip
            group: Group name the contact must belong to
        
        Returns:
            List[CachedContact]: Matching contacts
        """
        stmt = select(CachedContact)
        if group:
            # groups is stored as a JSON array; match the quoted element
            element = escape_like(json.dumps(group))
            stmt = stmt.where(cast(CachedContact.groups, Text).like(f"%{element}%", escape="\\"))
        
        stmt = stmt.order_by(*self._order_by()).offset(offset)
        if limit is not None:
            stmt = stmt.limit(limit)
        with self.db.session() as session:
            contacts = session.scalars(stmt).all()
        return self._open_all(contacts)
    
    def list_groups(self) -> List[str]:
        """Every group name used by a cached contact, sorted."""
        with self.db.session() as session:
            memberships = session.scalars(select(CachedContact.groups)).all()
        groups = set()
        for names in memberships:
            groups.update(name for name in names or () if name)
        return sorted(groups)
    
    def get_by_email(self, email: str) -> Optional[CachedContact]:
        """Find a contact by email address, ignoring case."""
        stmt = (
            select(CachedContact)
            .where(func.lower(CachedContact.email) == email.strip().lower())
            .order_by(*self._order_by())
            .limit(1)
        )
        with self.db.session() as session:
            contact = session.scalars(stmt).first()
        return self._open(contact)
