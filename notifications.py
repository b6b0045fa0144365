"""
Notification dispatch

Services hand notifications to a `NotificationDispatcher` after their own
work has committed. Delivery is best-effort: `notify_quietly` logs and drops
dispatch failures so they never fail the operation that triggered them.
"""
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from database import EQ, DocumentStore, Filter, StoreError, new_id
from errors import FetchFailed, NotAuthorized, NotFound, UpdateFailed
from schemas import NOTIFICATION, Notification, NotificationType

logger = logging.getLogger(__name__)


class NotificationDispatcher(ABC):

    @abstractmethod
    async def dispatch(
        self,
        type: NotificationType,
        recipient_id: str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> None:
        pass


async def notify_quietly(
    dispatcher: Optional[NotificationDispatcher],
    type: NotificationType,
    recipient_id: str,
    payload: Optional[Dict[str, Any]] = None,
) -> None:
    if dispatcher is None:
        return
    try:
        await dispatcher.dispatch(type, recipient_id, payload or {})
    except Exception as e:
        logger.warning("Dropped %s notification for %s: %s", type.value, recipient_id, e)


class StoreNotificationDispatcher(NotificationDispatcher):
    """Persists notifications to the `notification` collection.

    Push delivery is left to whatever watches that collection.
    """

    # Payload keys promoted to top-level notification fields
    REFERENCE_KEYS = ("sender_id", "business_id", "investment_id")

    def __init__(self, store: DocumentStore):
        self.store = store

    async def dispatch(self, type, recipient_id, payload=None):
        payload = dict(payload or {})
        refs = {key: payload.pop(key, None) for key in self.REFERENCE_KEYS}
        notification = Notification(
            id=new_id(),
            type=type,
            recipient_id=recipient_id,
            payload=payload,
            **refs,
        )
        await self.store.insert(NOTIFICATION, notification)
        logger.info("Queued %s notification %s for %s", type.value, notification.id, recipient_id)

    async def list_for_user(self, user_id: str, limit: int = 50) -> List[Notification]:
        try:
            docs = await self.store.query(
                NOTIFICATION,
                [Filter("recipient_id", EQ, user_id)],
                order_by="created_at",
                descending=True,
                limit=limit,
            )
        except StoreError as e:
            raise FetchFailed(str(e)) from e
        return [Notification.model_validate(doc) for doc in docs]

    async def mark_read(self, user_id: str, notification_id: str) -> None:
        try:
            doc = await self.store.get(NOTIFICATION, notification_id)
            if doc is None:
                raise NotFound("Notification not found.")
            if doc.get("recipient_id") != user_id:
                raise NotAuthorized()
            await self.store.update(NOTIFICATION, notification_id, {"read": True})
        except StoreError as e:
            raise UpdateFailed(str(e)) from e

    async def delete(self, user_id: str, notification_id: str) -> None:
        try:
            doc = await self.store.get(NOTIFICATION, notification_id)
            if doc is None:
                raise NotFound("Notification not found.")
            if doc.get("recipient_id") != user_id:
                raise NotAuthorized()
            await self.store.delete(NOTIFICATION, notification_id)
        except StoreError as e:
            raise UpdateFailed(str(e)) from e
        logger.info("Deleted notification %s for %s", notification_id, user_id)
