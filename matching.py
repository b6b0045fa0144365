"""
Matching engine

Investors swipe on businesses; entrepreneurs shortlist investors on their
businesses. An investor and a business match when the investor is in both
the business's `liked_by_investors` and `shortlisted_investors` sets.
Matches are computed from those sets on every query and never stored.
"""
import asyncio
import logging
from typing import Iterable, List, Optional

from businesses import BusinessRepository
from errors import InvalidData, MarketplaceError, NoMoreBusinesses, NotAuthorized
from investors import InvestorRepository
from notifications import NotificationDispatcher, notify_quietly
from schemas import Business, Match, NotificationType, SwipeOutcome

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 10


def is_match(business: Business, investor_id: str) -> bool:
    return investor_id in business.liked_by_investors and investor_id in business.shortlisted_investors


def build_match(business: Business, investor_id: str) -> Match:
    return Match(
        business_id=business.id,
        business_name=business.name,
        business_image_url=business.image_urls[0] if business.image_urls else None,
        entrepreneur_id=business.entrepreneur_id,
        investor_id=investor_id,
    )


def require_user(user_id: Optional[str]) -> str:
    if not user_id:
        raise NotAuthorized()
    return user_id


class MatchingEngine:
    def __init__(
        self,
        businesses: BusinessRepository,
        investors: InvestorRepository,
        notifier: Optional[NotificationDispatcher] = None,
        max_batch_size: int = 50,
    ):
        self.businesses = businesses
        self.investors = investors
        self.notifier = notifier
        self.max_batch_size = max_batch_size

    async def get_next_business_batch(
        self,
        investor_id: Optional[str],
        batch_size: int = DEFAULT_BATCH_SIZE,
        categories: Optional[List[str]] = None,
    ) -> List[Business]:
        """
        Next businesses for an investor to swipe on.

        An explicit `categories` list overrides the investor's stored
        investment focus; with neither, no category filter applies.

        Raises:
            NoMoreBusinesses: nothing left to swipe on
        """
        investor_id = require_user(investor_id)
        if batch_size <= 0:
            raise InvalidData("Batch size must be greater than zero.")
        batch_size = min(batch_size, self.max_batch_size)

        if categories is None:
            preferences = await self.investors.get_preferences(investor_id)
            categories = preferences.investment_focus or None

        businesses = await self.businesses.get_businesses_for_investor(
            investor_id, categories=categories, limit=batch_size
        )
        if not businesses:
            raise NoMoreBusinesses()
        return businesses

    async def swipe_right(self, investor_id: Optional[str], business_id: str) -> SwipeOutcome:
        investor_id = require_user(investor_id)
        await self.businesses.like_business(business_id, investor_id)
        logger.info("Investor %s liked business %s", investor_id, business_id)

        business = await self.businesses.get_business(business_id)
        if not is_match(business, investor_id):
            return SwipeOutcome.LIKED

        await notify_quietly(
            self.notifier,
            NotificationType.NEW_MATCH,
            business.entrepreneur_id,
            {"sender_id": investor_id, "business_id": business_id, "business_name": business.name},
        )
        return SwipeOutcome.MATCH

    async def swipe_left(self, investor_id: Optional[str], business_id: str) -> None:
        investor_id = require_user(investor_id)
        await self.businesses.dislike_business(business_id, investor_id)
        logger.info("Investor %s passed on business %s", investor_id, business_id)

    async def shortlist_investor(
        self,
        entrepreneur_id: Optional[str],
        business_id: str,
        investor_id: str,
    ) -> SwipeOutcome:
        """Record the entrepreneur's interest in an investor for one business."""
        entrepreneur_id = require_user(entrepreneur_id)
        business = await self.businesses.get_business(business_id)
        if business.entrepreneur_id != entrepreneur_id:
            raise NotAuthorized()

        await self.businesses.shortlist_investor(business_id, investor_id)
        logger.info("Entrepreneur %s shortlisted investor %s for %s", entrepreneur_id, investor_id, business_id)

        business = await self.businesses.get_business(business_id)
        if not is_match(business, investor_id):
            return SwipeOutcome.LIKED

        await notify_quietly(
            self.notifier,
            NotificationType.NEW_MATCH,
            investor_id,
            {"sender_id": entrepreneur_id, "business_id": business_id, "business_name": business.name},
        )
        return SwipeOutcome.MATCH

    async def get_entrepreneur_matches(self, entrepreneur_id: Optional[str]) -> List[Match]:
        entrepreneur_id = require_user(entrepreneur_id)
        owned = await self.businesses.get_entrepreneur_businesses(entrepreneur_id)
        matches = []
        for business in await self._refetch(b.id for b in owned):
            matches.extend(
                build_match(business, investor_id)
                for investor_id in dict.fromkeys(business.liked_by_investors)
                if is_match(business, investor_id)
            )
        return matches

    async def get_investor_matches(self, investor_id: Optional[str]) -> List[Match]:
        investor_id = require_user(investor_id)
        liked_ids = await self.businesses.get_businesses_liked_by(investor_id)
        return [
            build_match(business, investor_id)
            for business in await self._refetch(liked_ids)
            if is_match(business, investor_id)
        ]

    async def _refetch(self, business_ids: Iterable[str]) -> List[Business]:
        """Re-read businesses concurrently, skipping any that fail to load."""
        business_ids = list(business_ids)
        results = await asyncio.gather(
            *(self.businesses.get_business(business_id) for business_id in business_ids),
            return_exceptions=True,
        )
        businesses = []
        for business_id, result in zip(business_ids, results):
            if isinstance(result, MarketplaceError):
                logger.warning("Skipping business %s while collecting matches: %s", business_id, result.message)
                continue
            if isinstance(result, BaseException):
                raise result
            businesses.append(result)
        return businesses
