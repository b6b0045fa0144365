from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import List, Optional

from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from businesses import BusinessRepository
from database import DocumentStore, StoreError, create_store
from errors import MarketplaceError, NoMoreBusinesses, NotAuthorized
from investments import InvestmentProcessor
from investors import InvestorRepository
from logging_utils import setup_logging
from matching import MatchingEngine
from notifications import NotificationDispatcher, StoreNotificationDispatcher
from schemas import (
    BUSINESS_CATEGORIES,
    BUSINESS_STAGES,
    Business,
    BusinessBatch,
    BusinessCreate,
    BusinessUpdate,
    Investment,
    InvestmentRequest,
    Investor,
    InvestorCreate,
    InvestorPreferences,
    Match,
    Notification,
    PotentialReturn,
    SwipeResult,
)
from settings import Settings, get_settings


@dataclass
class Services:
    settings: Settings
    store: DocumentStore
    notifier: NotificationDispatcher
    businesses: BusinessRepository
    investors: InvestorRepository
    matching: MatchingEngine
    investments: InvestmentProcessor


def build_services(
    settings: Settings,
    store: Optional[DocumentStore] = None,
    notifier: Optional[NotificationDispatcher] = None,
) -> Services:
    store = store or create_store(settings.DATABASE_URL, settings.DATABASE_NAME, settings.TRANSACTION_MAX_RETRIES)
    notifier = notifier or StoreNotificationDispatcher(store)
    businesses = BusinessRepository(store, notifier)
    investors = InvestorRepository(store)
    return Services(
        settings=settings,
        store=store,
        notifier=notifier,
        businesses=businesses,
        investors=investors,
        matching=MatchingEngine(businesses, investors, notifier, max_batch_size=settings.MAX_BATCH_SIZE),
        investments=InvestmentProcessor(
            store,
            businesses,
            notifier,
            equity_decimals=settings.EQUITY_DECIMALS,
            compensate_on_cancel=settings.COMPENSATE_ON_CANCEL,
        ),
    )


def services(request: Request) -> Services:
    return request.app.state.services


# Identity is established upstream by the identity provider gateway
def current_user(x_user_id: Optional[str] = Header(None)) -> Optional[str]:
    return x_user_id


def required_user(user_id: Optional[str] = Depends(current_user)) -> str:
    if not user_id:
        raise NotAuthorized()
    return user_id


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[DocumentStore] = None,
    notifier: Optional[NotificationDispatcher] = None,
) -> FastAPI:
    settings = settings or get_settings()
    setup_logging(settings.LOG_LEVEL)
    container = build_services(settings, store, notifier)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await container.store.close()

    app = FastAPI(title="Teen Business Marketplace API", lifespan=lifespan)
    app.state.services = container

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(MarketplaceError)
    async def marketplace_error_handler(request: Request, exc: MarketplaceError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.get("/")
    def root():
        return {"message": "Marketplace backend is running"}

    @app.get("/test")
    async def test_database(svc: Services = Depends(services)):
        response = {
            "backend": "✅ Running",
            "database": "❌ Not Available",
            "database_name": None,
            "connection_status": "Not Connected",
            "collections": [],
        }
        try:
            info = await svc.store.ping()
            response["database"] = f"✅ Connected & Working ({info['backend']})"
            response["database_name"] = info["database_name"]
            response["connection_status"] = "Connected"
            response["collections"] = info["collections"]
        except StoreError as e:
            response["database"] = f"❌ Error: {str(e)[:80]}"
        return response

    @app.get("/api/categories")
    def list_categories():
        return {"categories": BUSINESS_CATEGORIES, "stages": BUSINESS_STAGES}

    # ----- Investor Endpoints -----
    @app.post("/api/investors", response_model=Investor)
    async def create_investor(payload: InvestorCreate, user_id: str = Depends(required_user),
                              svc: Services = Depends(services)):
        return await svc.investors.create_investor(user_id, payload)

    @app.put("/api/investors/me/preferences", response_model=InvestorPreferences)
    async def update_preferences(payload: InvestorPreferences, user_id: str = Depends(required_user),
                                 svc: Services = Depends(services)):
        return await svc.investors.update_preferences(user_id, payload)

    @app.get("/api/investors/{investor_id}", response_model=Investor)
    async def get_investor(investor_id: str, svc: Services = Depends(services)):
        return await svc.investors.get_investor(investor_id)

    # ----- Business Endpoints -----
    @app.post("/api/businesses", response_model=Business)
    async def create_business(payload: BusinessCreate, user_id: str = Depends(required_user),
                              svc: Services = Depends(services)):
        return await svc.businesses.create_business(user_id, payload)

    @app.get("/api/businesses/{business_id}", response_model=Business)
    async def get_business(business_id: str, svc: Services = Depends(services)):
        return await svc.businesses.get_business(business_id)

    @app.patch("/api/businesses/{business_id}", response_model=Business)
    async def update_business(business_id: str, payload: BusinessUpdate, user_id: str = Depends(required_user),
                              svc: Services = Depends(services)):
        return await svc.businesses.update_business(user_id, business_id, payload)

    # Moderation; the gateway only forwards moderator identities to this route
    @app.post("/api/businesses/{business_id}/approve", response_model=Business)
    async def approve_business(business_id: str, user_id: str = Depends(required_user),
                               svc: Services = Depends(services)):
        return await svc.businesses.approve_business(business_id)

    @app.post("/api/businesses/{business_id}/deactivate", response_model=dict)
    async def deactivate_business(business_id: str, user_id: str = Depends(required_user),
                                  svc: Services = Depends(services)):
        business = await svc.businesses.get_business(business_id)
        if business.entrepreneur_id != user_id:
            raise NotAuthorized()
        await svc.businesses.set_active(business_id, False)
        return {"id": business_id, "is_active": False}

    @app.get("/api/businesses/{business_id}/investments", response_model=List[Investment])
    async def list_business_investments(business_id: str, limit: int = Query(50, gt=0, le=200),
                                        svc: Services = Depends(services)):
        return await svc.investments.get_business_investments(business_id, limit)

    @app.post("/api/businesses/{business_id}/shortlist/{investor_id}", response_model=SwipeResult)
    async def shortlist_investor(business_id: str, investor_id: str, user_id: Optional[str] = Depends(current_user),
                                 svc: Services = Depends(services)):
        outcome = await svc.matching.shortlist_investor(user_id, business_id, investor_id)
        return SwipeResult(business_id=business_id, outcome=outcome)

    # ----- Swiping -----
    @app.get("/api/swipe/batch", response_model=BusinessBatch)
    async def next_batch(batch_size: Optional[int] = None, categories: Optional[List[str]] = Query(None),
                         user_id: Optional[str] = Depends(current_user), svc: Services = Depends(services)):
        size = batch_size if batch_size is not None else svc.settings.DEFAULT_BATCH_SIZE
        try:
            businesses = await svc.matching.get_next_business_batch(user_id, size, categories)
        except NoMoreBusinesses:
            return BusinessBatch(businesses=[], exhausted=True)
        return BusinessBatch(businesses=businesses)

    @app.post("/api/swipe/{business_id}/right", response_model=SwipeResult)
    async def swipe_right(business_id: str, user_id: Optional[str] = Depends(current_user),
                          svc: Services = Depends(services)):
        outcome = await svc.matching.swipe_right(user_id, business_id)
        return SwipeResult(business_id=business_id, outcome=outcome)

    @app.post("/api/swipe/{business_id}/left", response_model=dict)
    async def swipe_left(business_id: str, user_id: Optional[str] = Depends(current_user),
                         svc: Services = Depends(services)):
        await svc.matching.swipe_left(user_id, business_id)
        return {"business_id": business_id, "outcome": "disliked"}

    # ----- Matches -----
    @app.get("/api/matches/entrepreneur", response_model=List[Match])
    async def entrepreneur_matches(user_id: Optional[str] = Depends(current_user),
                                   svc: Services = Depends(services)):
        return await svc.matching.get_entrepreneur_matches(user_id)

    @app.get("/api/matches/investor", response_model=List[Match])
    async def investor_matches(user_id: Optional[str] = Depends(current_user),
                               svc: Services = Depends(services)):
        return await svc.matching.get_investor_matches(user_id)

    # ----- Investments -----
    @app.post("/api/investments", response_model=Investment)
    async def create_investment(body: InvestmentRequest, user_id: Optional[str] = Depends(current_user),
                                svc: Services = Depends(services)):
        return await svc.investments.create_investment(user_id, body.business_id, body.amount)

    @app.post("/api/investments/quote", response_model=PotentialReturn)
    async def quote_investment(body: InvestmentRequest, svc: Services = Depends(services)):
        business = await svc.businesses.get_business(body.business_id)
        return svc.investments.calculate_potential_return(body.amount, business)

    @app.get("/api/investments", response_model=List[Investment])
    async def list_my_investments(limit: int = Query(50, gt=0, le=200), user_id: Optional[str] = Depends(current_user),
                                  svc: Services = Depends(services)):
        return await svc.investments.get_investor_investments(user_id, limit)

    @app.get("/api/investments/{investment_id}", response_model=Investment)
    async def get_investment(investment_id: str, svc: Services = Depends(services)):
        return await svc.investments.get_investment(investment_id)

    @app.post("/api/investments/{investment_id}/cancel", response_model=Investment)
    async def cancel_investment(investment_id: str, user_id: Optional[str] = Depends(current_user),
                                svc: Services = Depends(services)):
        return await svc.investments.cancel_investment(user_id, investment_id)

    @app.post("/api/investments/{investment_id}/complete", response_model=Investment)
    async def complete_investment(investment_id: str, svc: Services = Depends(services)):
        return await svc.investments.complete_investment(investment_id)

    # ----- Notifications -----
    @app.get("/api/notifications", response_model=List[Notification])
    async def list_notifications(limit: int = Query(50, gt=0, le=200), user_id: str = Depends(required_user),
                                 svc: Services = Depends(services)):
        return await _store_notifier(svc).list_for_user(user_id, limit)

    @app.post("/api/notifications/{notification_id}/read", response_model=dict)
    async def mark_notification_read(notification_id: str, user_id: str = Depends(required_user),
                                     svc: Services = Depends(services)):
        await _store_notifier(svc).mark_read(user_id, notification_id)
        return {"id": notification_id, "read": True}

    @app.delete("/api/notifications/{notification_id}", response_model=dict)
    async def delete_notification(notification_id: str, user_id: str = Depends(required_user),
                                  svc: Services = Depends(services)):
        await _store_notifier(svc).delete(user_id, notification_id)
        return {"id": notification_id, "deleted": True}

    return app


def _store_notifier(svc: Services) -> StoreNotificationDispatcher:
    if isinstance(svc.notifier, StoreNotificationDispatcher):
        return svc.notifier
    return StoreNotificationDispatcher(svc.store)


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=app.state.services.settings.PORT)
