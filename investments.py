"""
Investment transaction processor

Creating an investment touches three records in one store transaction: the
business's funding total, the new investment and the investor's list of
investments. Status changes (pending -> completed | cancelled) are also
checked and written inside a transaction so two resolutions of the same
investment cannot both succeed.
"""
import logging
import math
from datetime import datetime, timezone
from typing import List, Optional

from pydantic import ValidationError

from businesses import BusinessRepository
from database import EQ, DocumentStore, Filter, StoreError, Transaction, new_id
from errors import (
    AlreadyCompleted,
    BusinessNotFound,
    CreationFailed,
    FetchFailed,
    InvalidAmount,
    InvalidData,
    InvestmentNotFound,
    NotAuthorized,
    UndefinedValuation,
    UpdateFailed,
)
from matching import require_user
from notifications import NotificationDispatcher, notify_quietly
from schemas import BUSINESS, INVESTMENT, INVESTOR, Business, Investment, InvestmentStatus, NotificationType, PotentialReturn

logger = logging.getLogger(__name__)

EQUITY_DECIMALS = 2


def check_amount(amount: Optional[float]) -> float:
    if amount is None or not math.isfinite(amount) or amount <= 0:
        raise InvalidAmount()
    return amount


def equity_for_amount(amount: float, funding_goal: float, equity: float) -> float:
    """Pro-rata equity: investing the whole funding goal buys all the offered equity."""
    return amount / funding_goal * equity


def calculate_potential_return(amount: float, business: Business, decimals: int = EQUITY_DECIMALS) -> PotentialReturn:
    amount = check_amount(amount)
    if business.equity <= 0:
        raise UndefinedValuation()
    equity_percentage = equity_for_amount(amount, business.funding_goal, business.equity)
    valuation = business.funding_goal / (business.equity / 100)
    estimated_value = valuation * (equity_percentage / 100)
    return PotentialReturn(
        equity_percentage=round(equity_percentage, decimals),
        estimated_value=round(estimated_value, 2),
        valuation=round(valuation, 2),
    )


def _to_investment(doc: dict) -> Investment:
    try:
        return Investment.model_validate(doc)
    except ValidationError as e:
        raise InvalidData(details=f"Malformed investment record {doc.get('id')}") from e


class InvestmentProcessor:
    def __init__(
        self,
        store: DocumentStore,
        businesses: BusinessRepository,
        notifier: Optional[NotificationDispatcher] = None,
        equity_decimals: int = EQUITY_DECIMALS,
        compensate_on_cancel: bool = False,
    ):
        self.store = store
        self.businesses = businesses
        self.notifier = notifier
        self.equity_decimals = equity_decimals
        self.compensate_on_cancel = compensate_on_cancel

    def calculate_potential_return(self, amount: float, business: Business) -> PotentialReturn:
        return calculate_potential_return(amount, business, self.equity_decimals)

    # ----- Creation -----
    async def create_investment(self, investor_id: Optional[str], business_id: str, amount: float) -> Investment:
        investor_id = require_user(investor_id)
        amount = check_amount(amount)

        try:
            business = await self.businesses.get_business(business_id)
        except FetchFailed as e:
            raise BusinessNotFound(details=e.details) from e

        investment = Investment(
            id=new_id(),
            investor_id=investor_id,
            business_id=business_id,
            amount=amount,
            equity_percentage=round(
                equity_for_amount(amount, business.funding_goal, business.equity), self.equity_decimals
            ),
            status=InvestmentStatus.PENDING,
        )

        async def apply(txn: Transaction) -> float:
            current = await txn.get(BUSINESS, business_id)
            if current is None:
                raise BusinessNotFound()
            funding_raised = (current.get("funding_raised") or 0) + amount
            await txn.update(BUSINESS, business_id, {
                "funding_raised": funding_raised,
                "updated_at": datetime.now(timezone.utc),
            })
            await txn.set(INVESTMENT, investment.id, investment)
            await txn.array_union(INVESTOR, investor_id, "investments_made", investment.id)
            return funding_raised

        try:
            funding_raised = await self.store.run_transaction(apply)
        except StoreError as e:
            raise CreationFailed(str(e)) from e

        logger.info(
            "Investment %s: %s invested %.2f in %s (funding now %.2f)",
            investment.id, investor_id, amount, business_id, funding_raised,
        )
        await self._notify_investment(business, investment)
        return investment

    async def _notify_investment(self, business: Business, investment: Investment) -> None:
        await notify_quietly(
            self.notifier,
            NotificationType.NEW_INVESTMENT,
            business.entrepreneur_id,
            {
                "sender_id": investment.investor_id,
                "business_id": business.id,
                "investment_id": investment.id,
                "business_name": business.name,
                "amount": investment.amount,
            },
        )
        # Goal check uses the snapshot read before the transaction
        if business.funding_raised + investment.amount >= business.funding_goal:
            await notify_quietly(
                self.notifier,
                NotificationType.FUNDING_GOAL,
                business.entrepreneur_id,
                {
                    "business_id": business.id,
                    "business_name": business.name,
                    "funding_goal": business.funding_goal,
                },
            )

    # ----- Status transitions -----
    async def cancel_investment(self, investor_id: Optional[str], investment_id: str) -> Investment:
        investor_id = require_user(investor_id)
        return await self._transition(investment_id, InvestmentStatus.CANCELLED, owner_id=investor_id)

    async def complete_investment(self, investment_id: str) -> Investment:
        # No ownership check: any caller may complete a pending investment
        return await self._transition(investment_id, InvestmentStatus.COMPLETED)

    async def _transition(
        self,
        investment_id: str,
        status: InvestmentStatus,
        owner_id: Optional[str] = None,
    ) -> Investment:
        compensate = status == InvestmentStatus.CANCELLED and self.compensate_on_cancel

        async def apply(txn: Transaction) -> Investment:
            doc = await txn.get(INVESTMENT, investment_id)
            if doc is None:
                raise InvestmentNotFound()
            investment = _to_investment(doc)
            if owner_id is not None and investment.investor_id != owner_id:
                raise NotAuthorized()
            if investment.status != InvestmentStatus.PENDING:
                raise AlreadyCompleted()

            business_doc = await txn.get(BUSINESS, investment.business_id) if compensate else None

            fields = {"status": status.value}
            if status == InvestmentStatus.COMPLETED:
                fields["completed_at"] = datetime.now(timezone.utc)
            await txn.update(INVESTMENT, investment_id, fields)

            if business_doc is not None:
                funding_raised = max((business_doc.get("funding_raised") or 0) - investment.amount, 0)
                await txn.update(BUSINESS, investment.business_id, {
                    "funding_raised": funding_raised,
                    "updated_at": datetime.now(timezone.utc),
                })
            return investment.model_copy(update=fields | {"status": status})

        try:
            investment = await self.store.run_transaction(apply)
        except StoreError as e:
            raise UpdateFailed(str(e)) from e

        logger.info("Investment %s %s", investment_id, status.value)
        return investment

    # ----- Reads -----
    async def get_investment(self, investment_id: str) -> Investment:
        try:
            doc = await self.store.get(INVESTMENT, investment_id)
        except StoreError as e:
            raise FetchFailed(str(e)) from e
        if doc is None:
            raise InvestmentNotFound()
        return _to_investment(doc)

    async def get_investor_investments(self, investor_id: Optional[str], limit: int = 50) -> List[Investment]:
        investor_id = require_user(investor_id)
        return await self._list(Filter("investor_id", EQ, investor_id), limit)

    async def get_business_investments(self, business_id: str, limit: int = 50) -> List[Investment]:
        return await self._list(Filter("business_id", EQ, business_id), limit)

    async def _list(self, filt: Filter, limit: int) -> List[Investment]:
        try:
            docs = await self.store.query(INVESTMENT, [filt], order_by="created_at", descending=True, limit=limit)
        except StoreError as e:
            raise FetchFailed(str(e)) from e
        return [_to_investment(doc) for doc in docs]

