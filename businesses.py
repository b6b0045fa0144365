"""
Business repository

CRUD, moderation flags and the investor like/dislike/shortlist sets of a
business. Set changes always go through the store's atomic set operations,
never a read-modify-write of the whole record.
"""
import logging
from datetime import datetime, timezone
from typing import List, Optional

from pydantic import ValidationError

from database import ARRAY_CONTAINS, EQ, IN, NOT_ARRAY_CONTAINS, DocumentStore, Filter, StoreError, new_id
from errors import BusinessNotFound, FetchFailed, InvalidData, NotAuthorized, UpdateFailed
from notifications import NotificationDispatcher, notify_quietly
from schemas import BUSINESS, Business, BusinessCreate, BusinessUpdate, NotificationType

logger = logging.getLogger(__name__)

LIKED = "liked_by_investors"
DISLIKED = "disliked_by_investors"
SHORTLISTED = "shortlisted_investors"


def _to_business(doc: dict) -> Business:
    try:
        return Business.model_validate(doc)
    except ValidationError as e:
        raise InvalidData(details=f"Malformed business record {doc.get('id')}") from e


class BusinessRepository:
    def __init__(self, store: DocumentStore, notifier: Optional[NotificationDispatcher] = None):
        self.store = store
        self.notifier = notifier

    # ----- Reads -----
    async def get_business(self, business_id: str) -> Business:
        try:
            doc = await self.store.get(BUSINESS, business_id)
        except StoreError as e:
            raise FetchFailed(str(e)) from e
        if doc is None:
            raise BusinessNotFound()
        return _to_business(doc)

    async def get_entrepreneur_businesses(self, entrepreneur_id: str) -> List[Business]:
        try:
            docs = await self.store.query(
                BUSINESS,
                [Filter("entrepreneur_id", EQ, entrepreneur_id)],
                order_by="created_at",
                descending=True,
            )
        except StoreError as e:
            raise FetchFailed(str(e)) from e
        return [_to_business(doc) for doc in docs]

    async def get_businesses_for_investor(
        self,
        investor_id: str,
        categories: Optional[List[str]] = None,
        limit: int = 10,
    ) -> List[Business]:
        """Active, approved businesses the investor has not swiped on yet, newest first."""
        filters = [
            Filter("is_active", EQ, True),
            Filter("is_approved", EQ, True),
            Filter(LIKED, NOT_ARRAY_CONTAINS, investor_id),
            Filter(DISLIKED, NOT_ARRAY_CONTAINS, investor_id),
        ]
        if categories:
            filters.append(Filter("category", IN, list(categories)))
        try:
            docs = await self.store.query(BUSINESS, filters, order_by="created_at", descending=True, limit=limit)
        except StoreError as e:
            raise FetchFailed(str(e)) from e
        return [_to_business(doc) for doc in docs]

    async def get_businesses_liked_by(self, investor_id: str) -> List[str]:
        try:
            docs = await self.store.query(BUSINESS, [Filter(LIKED, ARRAY_CONTAINS, investor_id)])
        except StoreError as e:
            raise FetchFailed(str(e)) from e
        return [doc["id"] for doc in docs]

    # ----- Writes -----
    async def create_business(self, entrepreneur_id: str, payload: BusinessCreate) -> Business:
        business = Business(id=new_id(), entrepreneur_id=entrepreneur_id, **payload.model_dump())
        try:
            # funding_progress is derived on read
            await self.store.insert(BUSINESS, business.model_dump(exclude={"funding_progress"}))
        except StoreError as e:
            raise UpdateFailed(str(e)) from e
        logger.info("Business %s created by %s", business.id, entrepreneur_id)
        return business

    async def update_business(self, entrepreneur_id: str, business_id: str, payload: BusinessUpdate) -> Business:
        business = await self.get_business(business_id)
        if business.entrepreneur_id != entrepreneur_id:
            raise NotAuthorized()
        fields = payload.model_dump(exclude_unset=True)
        if not fields:
            return business
        fields["updated_at"] = datetime.now(timezone.utc)
        await self._update(business_id, fields)
        return await self.get_business(business_id)

    async def set_active(self, business_id: str, active: bool) -> None:
        await self._update(business_id, {"is_active": active, "updated_at": datetime.now(timezone.utc)})
        logger.info("Business %s %s", business_id, "activated" if active else "deactivated")

    async def approve_business(self, business_id: str) -> Business:
        business = await self.get_business(business_id)
        await self._update(business_id, {"is_approved": True, "updated_at": datetime.now(timezone.utc)})
        await notify_quietly(
            self.notifier,
            NotificationType.BUSINESS_APPROVED,
            business.entrepreneur_id,
            {"business_id": business_id, "business_name": business.name},
        )
        return business.model_copy(update={"is_approved": True})

    async def like_business(self, business_id: str, investor_id: str) -> None:
        # Liking also clears an earlier dislike so the two sets stay disjoint
        await self._modify_sets(business_id, add={LIKED: investor_id}, remove={DISLIKED: investor_id})

    async def dislike_business(self, business_id: str, investor_id: str) -> None:
        await self._modify_sets(business_id, add={DISLIKED: investor_id}, remove={LIKED: investor_id})

    async def shortlist_investor(self, business_id: str, investor_id: str) -> None:
        await self._modify_sets(business_id, add={SHORTLISTED: investor_id})

    async def _update(self, business_id: str, fields: dict) -> None:
        try:
            found = await self.store.update(BUSINESS, business_id, fields)
        except StoreError as e:
            raise UpdateFailed(str(e)) from e
        if not found:
            raise BusinessNotFound()

    async def _modify_sets(self, business_id: str, add=None, remove=None) -> None:
        try:
            found = await self.store.modify_sets(BUSINESS, business_id, add=add, remove=remove)
        except StoreError as e:
            raise UpdateFailed(str(e)) from e
        if not found:
            raise BusinessNotFound()
