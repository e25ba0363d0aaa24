"""
Replays queued offline actions against the remote provider.
"""

from typing import Callable, Dict, Optional

from ...utils.logging_setup import get_logger
from ...data.models.offline import ActionType, QueuedAction
from ...data.repositories.offline_queue import OfflineQueue
from ..cache_database import CacheError
from .metrics import SyncMetrics
from .remote import RemoteProvider

logger = get_logger(__name__)

DEFAULT_ARCHIVE_FOLDER = "archive"


class UnknownActionError(CacheError):
    """Queued action type has no replay handler."""
    pass


class OfflineReplayer:
    """
    Drains offline queues oldest first.
    
    A failed action goes back to the head of its queue with the error
    recorded, and the drain stops there so later actions on the same
    resource never overtake it. With max_attempts set, an action that has
    failed that many times is dropped instead.
    """
    
    def __init__(
        self,
        remote: RemoteProvider,
        max_attempts: int = 0,
        metrics: Optional[SyncMetrics] = None
    ):
        """
        Initialize the replayer.
        
        Args:
            remote: Provider the actions are sent to
            max_attempts: Failed replays before an action is dropped (0 = never)
            metrics: Optional metrics to record replay outcomes in
        """
        self.remote = remote
        self.max_attempts = max_attempts
        self.metrics = metrics
        self.logger = logger
        self._handlers: Dict[ActionType, Callable[[QueuedAction, str], None]] = {
            ActionType.MARK_READ: self._mark_read,
            ActionType.MARK_UNREAD: self._mark_read,
            ActionType.STAR: self._star,
            ActionType.UNSTAR: self._star,
            ActionType.ARCHIVE: self._archive,
            ActionType.DELETE: self._delete_message,
            ActionType.MOVE: self._move,
            ActionType.SEND: self._send,
            ActionType.SAVE_DRAFT: self._save_draft,
            ActionType.DELETE_DRAFT: self._delete_draft,
            ActionType.CREATE_EVENT: self._create_event,
            ActionType.UPDATE_EVENT: self._update_event,
            ActionType.DELETE_EVENT: self._delete_event,
            ActionType.CREATE_CONTACT: self._create_contact,
            ActionType.UPDATE_CONTACT: self._update_contact,
            ActionType.DELETE_CONTACT: self._delete_contact,
        }
    
    def drain(self, queue: OfflineQueue, grant_id: str, label: str = "") -> int:
        """
        Replay queued actions until the queue is empty or one fails.
        
        Args:
            queue: The account's offline queue
            grant_id: Remote grant of the account
            label: Account name for logs and metrics
        
        Returns:
            int: Number of actions replayed successfully
        """
        label = label or grant_id
        replayed = 0
        failed = 0
        
        with queue.drain_lock:
            while True:
                action = queue.dequeue()
                if action is None:
                    break
                
                try:
                    self.replay(action, grant_id)
                except Exception as e:
                    failed += 1
                    if self._give_up(queue, action, e, label):
                        continue
                    break
                
                queue.settle(action)
                replayed += 1
                self.logger.debug(f"Replayed {action.type.value} for {action.resource_id} ({label})")
        
        if replayed or failed:
            self.logger.info(f"Replayed {replayed} offline actions for {label}, {failed} failed")
        if self.metrics is not None:
            self.metrics.record_replay(label, replayed, failed)
        return replayed
    
    def _give_up(self, queue: OfflineQueue, action: QueuedAction, error: Exception, label: str) -> bool:
        """Handle a failed replay. Returns True if the action was dropped."""
        # Count this failure
        attempts = (action.attempts or 0) + 1
        if self.max_attempts and attempts >= self.max_attempts:
            self.logger.warning(
                f"Dropping offline action {action.id} ({action.type.value}) for {label} "
                f"after {attempts} attempts: {error}"
            )
            queue.settle(action)
            return True
        
        self.logger.warning(f"Offline action {action.id} ({action.type.value}) failed for {label}: {error}")
        if not queue.restore(action):
            # Cancelled while in flight
            return True
        queue.mark_failed(action.id, error)
        return False
    
    def replay(self, action: QueuedAction, grant_id: str) -> None:
        """
        Send one action to the remote provider.
        
        Raises:
            UnknownActionError: If the action type has no handler
            Exception: Whatever the remote provider raises
        """
        handler = self._handlers.get(action.type)
        if handler is None:
            raise UnknownActionError(f"Unknown offline action type: {action.type}")
        handler(action, grant_id)
    
    @staticmethod
    def _require_payload(action: QueuedAction):
        # An explicit flag in the payload wins over the action type
        payload = action.payload_model()
        if payload is None:
            raise ValueError(f"{action.type.value} action {action.id} has no payload")
        return payload
    
    def _mark_read(self, action: QueuedAction, grant_id: str) -> None:
        payload = action.payload_model()
        unread = action.type == ActionType.MARK_UNREAD
        if payload is not None and payload.unread is not None:
            unread = payload.unread
        self.remote.update_message(grant_id, action.resource_id, unread=unread)
    
    def _star(self, action: QueuedAction, grant_id: str) -> None:
        payload = action.payload_model()
        starred = action.type == ActionType.STAR
        if payload is not None and payload.starred is not None:
            starred = payload.starred
        self.remote.update_message(grant_id, action.resource_id, starred=starred)
    
    def _archive(self, action: QueuedAction, grant_id: str) -> None:
        payload = action.payload_model()
        folder = (payload.archive_folder_id if payload else None) or DEFAULT_ARCHIVE_FOLDER
        self.remote.update_message(grant_id, action.resource_id, folders=[folder])
    
    def _delete_message(self, action: QueuedAction, grant_id: str) -> None:
        # Messages
        self.remote.delete_message(grant_id, action.resource_id)
    
    def _move(self, action: QueuedAction, grant_id: str) -> None:
        payload = self._require_payload(action)
        self.remote.update_message(grant_id, action.resource_id, folders=[payload.folder_id])
    
    def _send(self, action: QueuedAction, grant_id: str) -> None:
        self.remote.send_message(grant_id, self._require_payload(action))
    
    def _save_draft(self, action: QueuedAction, grant_id: str) -> None:
        self.remote.save_draft(grant_id, self._require_payload(action))
    
    def _delete_draft(self, action: QueuedAction, grant_id: str) -> None:
        # Drafts
        self.remote.delete_draft(grant_id, action.resource_id)
    
    def _create_event(self, action: QueuedAction, grant_id: str) -> None:
        # Events
        self.remote.create_event(grant_id, self._require_payload(action))
    
    def _update_event(self, action: QueuedAction, grant_id: str) -> None:
        self.remote.update_event(grant_id, action.resource_id, self._require_payload(action))
    
    def _delete_event(self, action: QueuedAction, grant_id: str) -> None:
        payload = self._require_payload(action)
        self.remote.delete_event(grant_id, payload.calendar_id, action.resource_id)
    
    def _create_contact(self, action: QueuedAction, grant_id: str) -> None:
        # Contacts
        self.remote.create_contact(grant_id, self._require_payload(action))
    
    def _update_contact(self, action: QueuedAction, grant_id: str) -> None:
        self.remote.update_contact(grant_id, action.resource_id, self._require_payload(action))
    
    def _delete_contact(self, action: QueuedAction, grant_id: str) -> None:
        self.remote.delete_contact(grant_id, action.resource_id)
