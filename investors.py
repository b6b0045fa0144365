import logging
from typing import Optional

from pydantic import ValidationError

from database import DocumentStore, StoreError, Transaction
from errors import AlreadyExists, FetchFailed, InvalidData, NotFound, UpdateFailed
from schemas import INVESTOR, Investor, InvestorCreate, InvestorPreferences

logger = logging.getLogger(__name__)


class InvestorRepository:
    """Investor profiles and the swipe preferences stored on them."""

    def __init__(self, store: DocumentStore):
        self.store = store

    async def _get_doc(self, investor_id: str) -> Optional[dict]:
        try:
            return await self.store.get(INVESTOR, investor_id)
        except StoreError as e:
            raise FetchFailed(str(e)) from e

    async def create_investor(self, investor_id: str, payload: InvestorCreate) -> Investor:
        """
        Create the investor's profile.

        Investing before having a profile leaves a bare record that only
        holds `investments_made`; the profile is merged into it.

        Raises:
            AlreadyExists: the investor already has a profile
        """
        async def apply(txn: Transaction) -> Investor:
            doc = await txn.get(INVESTOR, investor_id) or {}
            if "created_at" in doc:
                raise AlreadyExists("Investor profile already exists.")
            investor = Investor(
                id=investor_id,
                investments_made=doc.get("investments_made") or [],
                **payload.model_dump(),
            )
            await txn.set(INVESTOR, investor_id, investor)
            return investor

        try:
            investor = await self.store.run_transaction(apply)
        except StoreError as e:
            raise UpdateFailed(str(e)) from e
        logger.info("Investor profile %s created", investor_id)
        return investor

    async def get_investor(self, investor_id: str) -> Investor:
        doc = await self._get_doc(investor_id)
        if doc is None:
            raise NotFound("Investor not found.")
        try:
            return Investor.model_validate(doc)
        except ValidationError as e:
            raise InvalidData(details=f"Malformed investor record {investor_id}") from e

    async def get_preferences(self, investor_id: str) -> InvestorPreferences:
        # No profile yet means no stored preferences
        doc = await self._get_doc(investor_id) or {}
        try:
            return InvestorPreferences(
                investment_focus=doc.get("investment_focus") or [],
                min_investment_amount=doc.get("min_investment_amount"),
                max_investment_amount=doc.get("max_investment_amount"),
            )
        except ValidationError as e:
            raise InvalidData(details=f"Malformed preferences for investor {investor_id}") from e

    async def update_preferences(self, investor_id: str, preferences: InvestorPreferences) -> InvestorPreferences:
        try:
            found = await self.store.update(INVESTOR, investor_id, preferences.model_dump())
        except StoreError as e:
            raise UpdateFailed(str(e)) from e
        if not found:
            raise NotFound("Investor not found.")
        return preferences
