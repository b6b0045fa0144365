import pytest

from businesses import BusinessRepository
from database import InMemoryDocumentStore, new_id
from investments import InvestmentProcessor
from investors import InvestorRepository
from matching import MatchingEngine
from notifications import NotificationDispatcher
from schemas import BUSINESS, Business


class RecordingNotifier(NotificationDispatcher):
    """Keeps every dispatched notification in memory"""

    def __init__(self):
        self.sent = []

    async def dispatch(self, type, recipient_id, payload=None):
        self.sent.append((type, recipient_id, dict(payload or {})))

    def of_type(self, type):
        return [n for n in self.sent if n[0] == type]


class FailingNotifier(NotificationDispatcher):
    async def dispatch(self, type, recipient_id, payload=None):
        raise RuntimeError("push service unavailable")


async def add_business(store, **overrides) -> Business:
    """Insert an approved, active business straight into the store"""
    data = {
        "id": new_id(),
        "entrepreneur_id": "ent-1",
        "name": "Lemonade Labs",
        "category": "Food",
        "funding_goal": 35000.0,
        "equity": 15.0,
        "is_approved": True,
    }
    data.update(overrides)
    business = Business(**data)
    await store.insert(BUSINESS, business)
    return business


@pytest.fixture
def store():
    return InMemoryDocumentStore()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def businesses(store, notifier):
    return BusinessRepository(store, notifier)


@pytest.fixture
def investors(store):
    return InvestorRepository(store)


@pytest.fixture
def matching(businesses, investors, notifier):
    return MatchingEngine(businesses, investors, notifier)


@pytest.fixture
def investments(store, businesses, notifier):
    return InvestmentProcessor(store, businesses, notifier)
