"""
Online/offline state shared by the sync loops.
"""

import threading
from datetime import datetime
from typing import Callable, List, Optional

from ...utils.logging_setup import get_logger
from ...data.models.cache import utcnow

logger = get_logger(__name__)


class ConnectivityMonitor:
    """
    Tracks whether the remote provider is reachable.
    
    Sync loops report call outcomes here; listeners hear about transitions
    only, not every report.
    """
    
    def __init__(self, online: bool = True):
        self._online = online
        self._changed_at: Optional[datetime] = None
        self._lock = threading.Lock()
        self._listeners: List[Callable[[bool], None]] = []
    
    @property
    def is_online(self) -> bool:
        with self._lock:
            return self._online
    
    @property
    def changed_at(self) -> Optional[datetime]:
        with self._lock:
            return self._changed_at
    
    def add_listener(self, callback: Callable[[bool], None]) -> None:
        """Register a callback invoked with the new state on every transition."""
        with self._lock:
            self._listeners.append(callback)
    
    def remove_listener(self, callback: Callable[[bool], None]) -> None:
        with self._lock:
            if callback in self._listeners:
                self._listeners.remove(callback)
    
    def set_online(self, online: bool) -> bool:
        """
        Report the current reachability.
        
        Returns:
            bool: True if this changed the state
        """
        with self._lock:
            # No transition
            if self._online == online:
                return False
            self._online = online
            self._changed_at = utcnow()
            # Notify outside the lock so listeners may call back in
            listeners = list(self._listeners)
        
        if online:
            logger.info("Remote provider reachable again, switching to online mode")
        else:
            logger.warning("Remote provider unreachable, switching to offline mode")
        
        for callback in listeners:
            try:
                callback(online)
            # A failing listener must not stop the others
            except Exception as e:
                logger.error(f"Connectivity listener failed: {e}")
        return True
