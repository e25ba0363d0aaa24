"""
Contact photo cache model.

Photos are shared across accounts and live in their own database, so they
get their own declarative base.
"""

from sqlalchemy import Column, Integer, String, Text
from sqlalchemy.orm import declarative_base

from .cache import Timestamp

PhotoBase = declarative_base()


class CachedPhoto(PhotoBase):
    """Index row for a photo file stored on disk."""
    __tablename__ = "photos"
    
    contact_id = Column(String(255), primary_key=True)
    content_type = Column(String(100), nullable=False)
    size = Column(Integer, nullable=False, default=0)
    local_path = Column(Text, nullable=False)  # File name is a hash of the contact id
    cached_at = Column(Timestamp, nullable=False)
    accessed_at = Column(Timestamp, nullable=False)
    
    def __repr__(self):
        return f"<CachedPhoto(contact_id='{self.contact_id}', size={self.size})>"
