"""
Data models for the Kestrel cache engine.
"""

from .cache import (
    Base, Timestamp, FolderType, EventStatus,
    CachedEmail, CachedFolder, CachedEvent, CachedContact, CachedAttachment, SyncState, CacheMeta,
)
from .offline import ActionType, QueuedAction, PAYLOAD_TYPES
from .photos import PhotoBase, CachedPhoto

__all__ = [
    'Base',
    'Timestamp',
    'FolderType',
    'EventStatus',
    'CachedEmail',
    'CachedFolder',
    'CachedEvent',
    'CachedContact',
    'CachedAttachment',
    'SyncState',
    'CacheMeta',
    'ActionType',
    'QueuedAction',
    'PAYLOAD_TYPES',
    'PhotoBase',
    'CachedPhoto',
]
