import pytest
from fastapi.testclient import TestClient

from database import InMemoryDocumentStore
from main import create_app
from settings import Settings

ENTREPRENEUR = {"X-User-Id": "ent-1"}
INVESTOR = {"X-User-Id": "inv-1"}
OTHER_INVESTOR = {"X-User-Id": "inv-2"}
MODERATOR = {"X-User-Id": "mod-1"}


@pytest.fixture
def client():
    settings = Settings(DATABASE_URL=None, DATABASE_NAME=None)
    app = create_app(settings=settings, store=InMemoryDocumentStore())
    with TestClient(app) as c:
        yield c


def create_listing(client, **overrides):
    payload = {
        "name": "Robo Tutors",
        "tagline": "Homework help from robots",
        "category": "Technology",
        "stage": "Prototype",
        "funding_goal": 20000,
        "equity": 10,
    }
    payload.update(overrides)
    response = client.post("/api/businesses", json=payload, headers=ENTREPRENEUR)
    assert response.status_code == 200
    business_id = response.json()["id"]
    assert client.post(f"/api/businesses/{business_id}/approve", headers=MODERATOR).status_code == 200
    return business_id


def test_root_and_health(client):
    assert client.get("/").status_code == 200
    data = client.get("/test").json()
    assert data["connection_status"] == "Connected"


def test_categories(client):
    data = client.get("/api/categories").json()
    assert "Technology" in data["categories"]
    assert data["stages"][0] == "Idea"


def test_business_validation(client):
    response = client.post("/api/businesses", json={"name": "Tiny", "funding_goal": 100, "equity": 10},
                           headers=ENTREPRENEUR)
    assert response.status_code == 422
    response = client.post("/api/businesses", json={"name": "Greedy", "funding_goal": 5000, "equity": 60},
                           headers=ENTREPRENEUR)
    assert response.status_code == 422


def test_missing_identity_is_rejected(client):
    business_id = create_listing(client)
    response = client.post(f"/api/swipe/{business_id}/right")
    assert response.status_code == 403
    assert response.json()["error_code"] == "NOT_AUTHORIZED"


def test_only_owner_can_edit(client):
    business_id = create_listing(client)
    response = client.patch(f"/api/businesses/{business_id}", json={"tagline": "New"}, headers=INVESTOR)
    assert response.status_code == 403
    response = client.patch(f"/api/businesses/{business_id}", json={"tagline": "New"}, headers=ENTREPRENEUR)
    assert response.status_code == 200
    assert response.json()["tagline"] == "New"
    assert response.json()["funding_goal"] == 20000


def test_swipe_match_and_invest_flow(client):
    business_id = create_listing(client)
    assert client.post("/api/investors", json={"name": "Ada", "investment_focus": ["Technology"]},
                       headers=INVESTOR).status_code == 200

    batch = client.get("/api/swipe/batch", headers=INVESTOR).json()
    assert [b["id"] for b in batch["businesses"]] == [business_id]
    assert batch["exhausted"] is False

    swipe = client.post(f"/api/swipe/{business_id}/right", headers=INVESTOR).json()
    assert swipe["outcome"] == "liked"

    shortlist = client.post(f"/api/businesses/{business_id}/shortlist/inv-1", headers=ENTREPRENEUR).json()
    assert shortlist["outcome"] == "match"

    matches = client.get("/api/matches/entrepreneur", headers=ENTREPRENEUR).json()
    assert [(m["business_id"], m["investor_id"]) for m in matches] == [(business_id, "inv-1")]
    assert len(client.get("/api/matches/investor", headers=INVESTOR).json()) == 1

    batch = client.get("/api/swipe/batch", headers=INVESTOR).json()
    assert batch == {"businesses": [], "exhausted": True}

    quote = client.post("/api/investments/quote", json={"business_id": business_id, "amount": 5000}).json()
    assert quote["equity_percentage"] == 2.5

    response = client.post("/api/investments", json={"business_id": business_id, "amount": 5000}, headers=INVESTOR)
    assert response.status_code == 200
    investment = response.json()
    assert investment["status"] == "pending"
    assert investment["equity_percentage"] == 2.5

    business = client.get(f"/api/businesses/{business_id}").json()
    assert business["funding_raised"] == 5000
    assert business["funding_progress"] == 25

    mine = client.get("/api/investments", headers=INVESTOR).json()
    assert [i["id"] for i in mine] == [investment["id"]]

    response = client.post(f"/api/investments/{investment['id']}/cancel", headers=OTHER_INVESTOR)
    assert response.status_code == 403

    response = client.post(f"/api/investments/{investment['id']}/complete")
    assert response.json()["status"] == "completed"

    response = client.post(f"/api/investments/{investment['id']}/complete")
    assert response.status_code == 409
    assert response.json()["error_code"] == "ALREADY_COMPLETED"

    notifications = client.get("/api/notifications", headers=ENTREPRENEUR).json()
    assert {n["type"] for n in notifications} == {"business_approved", "new_investment"}
    investor_notes = client.get("/api/notifications", headers=INVESTOR).json()
    assert [n["type"] for n in investor_notes] == ["new_match"]

    note_id = investor_notes[0]["id"]
    assert client.post(f"/api/notifications/{note_id}/read", headers=ENTREPRENEUR).status_code == 403
    assert client.post(f"/api/notifications/{note_id}/read", headers=INVESTOR).status_code == 200
    assert client.get("/api/notifications", headers=INVESTOR).json()[0]["read"] is True


def test_invalid_investment_amount(client):
    business_id = create_listing(client)
    response = client.post("/api/investments", json={"business_id": business_id, "amount": 0}, headers=INVESTOR)
    assert response.status_code == 400
    assert response.json()["error_code"] == "INVALID_AMOUNT"


def test_unknown_business(client):
    response = client.post("/api/investments", json={"business_id": "nope", "amount": 10}, headers=INVESTOR)
    assert response.status_code == 404
    assert response.json()["error_code"] == "BUSINESS_NOT_FOUND"


def test_deactivated_business_leaves_the_swipe_deck(client):
    business_id = create_listing(client)
    assert client.post(f"/api/businesses/{business_id}/deactivate", headers=INVESTOR).status_code == 403
    assert client.post(f"/api/businesses/{business_id}/deactivate", headers=ENTREPRENEUR).status_code == 200

    assert client.get(f"/api/businesses/{business_id}").json()["is_active"] is False
    assert client.get("/api/swipe/batch", headers=INVESTOR).json()["exhausted"] is True


def test_investor_profile_and_preferences(client):
    assert client.get("/api/investors/inv-1").status_code == 404
    client.post("/api/investors", json={"name": "Ada", "email": "ada@example.com"}, headers=INVESTOR)

    response = client.put("/api/investors/me/preferences", json={"investment_focus": ["Art"]}, headers=INVESTOR)
    assert response.status_code == 200
    investor = client.get("/api/investors/inv-1").json()
    assert investor["investment_focus"] == ["Art"]
    assert investor["email"] == "ada@example.com"

    create_listing(client)  # Technology
    assert client.get("/api/swipe/batch", headers=INVESTOR).json()["exhausted"] is True


def test_approval_requires_identity(client):
    response = client.post("/api/businesses", json={"name": "Pet Pals", "funding_goal": 5000, "equity": 5},
                           headers=ENTREPRENEUR)
    business_id = response.json()["id"]
    assert client.post(f"/api/businesses/{business_id}/approve").status_code == 403
    assert client.get(f"/api/businesses/{business_id}").json()["is_approved"] is False


def test_quote_rejects_non_positive_amounts(client):
    business_id = create_listing(client)
    for amount in (0, -500):
        response = client.post("/api/investments/quote", json={"business_id": business_id, "amount": amount})
        assert response.status_code == 400
        assert response.json()["error_code"] == "INVALID_AMOUNT"


def test_nan_amount_is_an_invalid_amount(client):
    business_id = create_listing(client)
    body = '{"business_id": "%s", "amount": NaN}' % business_id
    response = client.post("/api/investments", content=body,
                           headers={**INVESTOR, "Content-Type": "application/json"})
    assert response.status_code == 400
    assert response.json()["error_code"] == "INVALID_AMOUNT"
    assert client.get(f"/api/businesses/{business_id}").json()["funding_raised"] == 0


def test_profile_after_first_investment(client):
    business_id = create_listing(client)
    investment = client.post("/api/investments", json={"business_id": business_id, "amount": 1000},
                             headers=INVESTOR).json()

    response = client.post("/api/investors", json={"name": "Ada"}, headers=INVESTOR)
    assert response.status_code == 200
    assert response.json()["investments_made"] == [investment["id"]]

    response = client.post("/api/investors", json={"name": "Ada"}, headers=INVESTOR)
    assert response.status_code == 409
    assert response.json()["error_code"] == "ALREADY_EXISTS"


def test_delete_notification(client):
    create_listing(client)
    [note] = client.get("/api/notifications", headers=ENTREPRENEUR).json()

    assert client.delete(f"/api/notifications/{note['id']}", headers=INVESTOR).status_code == 403
    assert client.delete(f"/api/notifications/{note['id']}", headers=ENTREPRENEUR).status_code == 200
    assert client.get("/api/notifications", headers=ENTREPRENEUR).json() == []
    assert client.delete(f"/api/notifications/{note['id']}", headers=ENTREPRENEUR).status_code == 404
