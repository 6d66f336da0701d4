from datetime import date
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from expense_assistant.config import Settings, get_settings
from expense_assistant.domain.entities import ExtractedExpenseCandidate
from expense_assistant.gateway import ExpenseGateway
from expense_assistant.link_codes import LinkCodeService
from expense_assistant.main import app
from expense_assistant.routers.bank_email import get_email_pipeline
from expense_assistant.routers.whatsapp_webhook import get_whatsapp_pipeline
from expense_assistant.services import get_gateway, get_link_codes

from conftest import candidate, webhook_payload

PREFIX = get_settings().api_prefix


@pytest.fixture
def api(gateway, make_pipeline):
    def setup(*outcomes):
        env = make_pipeline(*outcomes)
        app.dependency_overrides[get_gateway] = lambda: gateway
        app.dependency_overrides[get_link_codes] = lambda: LinkCodeService(gateway, ttl_minutes=10)
        app.dependency_overrides[get_email_pipeline] = lambda: env.pipeline
        app.dependency_overrides[get_whatsapp_pipeline] = lambda: env.pipeline
        app.dependency_overrides[get_settings] = lambda: Settings(whatsapp_verify_token="verify-me")
        return TestClient(app), env

    yield setup
    app.dependency_overrides.clear()


def _login(client, gateway, key="telegram:42"):
    gateway.get_or_create_user(key, name="Ana", handle="ana")
    code = LinkCodeService(gateway, ttl_minutes=10).issue(key)
    response = client.post(f"{PREFIX}/link", json={"code": code})
    assert response.status_code == 200
    return {"Authorization": f"Bearer {response.json()['access_token']}"}


def test_health(api):
    client, _ = api()
    assert client.get("/").json() == {"status": "ok"}


def test_link_code_login(api, gateway):
    client, _ = api()
    headers = _login(client, gateway)

    response = client.get(f"{PREFIX}/me", headers=headers)

    assert response.status_code == 200
    assert response.json()["key"] == "telegram:42"
    assert response.json()["handle"] == "ana"


def test_invalid_link_code(api, gateway):
    client, _ = api()
    response = client.post(f"{PREFIX}/link", json={"code": "ZZZZZZ"})
    assert response.status_code == 400


def test_me_requires_token(api):
    client, _ = api()
    assert client.get(f"{PREFIX}/me").status_code == 401
    assert client.get(f"{PREFIX}/me", headers={"Authorization": "Bearer nope"}).status_code == 401


def test_expenses_and_summary(api, gateway):
    client, _ = api()
    headers = _login(client, gateway)
    for amount, category, currency in (("45.90", "food", "PEN"), ("20", "transport", "PEN"), ("5", "food", "USD")):
        gateway.insert(
            "telegram:42",
            ExtractedExpenseCandidate(
                amount=Decimal(amount),
                currency=currency,
                category=category,
                merchant="Shop",
                date=date(2024, 3, 10),
            ),
        )

    listed = client.get(
        f"{PREFIX}/me/expenses",
        params={"start_date": "2024-03-01", "end_date": "2024-03-31"},
        headers=headers,
    )
    assert listed.status_code == 200
    assert len(listed.json()) == 3
    assert {float(item["amount"]) for item in listed.json()} == {45.9, 20.0, 5.0}

    summary = client.get(f"{PREFIX}/me/summary", params={"month": 3, "year": 2024}, headers=headers).json()
    assert summary["count"] == 3
    assert float(summary["totals_by_currency"]["PEN"]) == 65.9
    assert summary["top_category"] == "food"

    bad_range = client.get(
        f"{PREFIX}/me/expenses",
        params={"start_date": "2024-04-01", "end_date": "2024-03-01"},
        headers=headers,
    )
    assert bad_range.status_code == 400


def test_notification_email(api, gateway):
    client, _ = api()
    headers = _login(client, gateway)

    response = client.put(f"{PREFIX}/me/notification-email", json={"email": "Ana@Mail.com"}, headers=headers)

    assert response.status_code == 200
    assert response.json()["notification_email"] == "ana@mail.com"
    assert gateway.find_user_by_notification_email("ana@mail.com").key == "telegram:42"
    assert client.put(
        f"{PREFIX}/me/notification-email", json={"email": "not-an-email"}, headers=headers
    ).status_code == 422


def test_storage_outage_returns_503(api):
    client, _ = api()
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    broken = ExpenseGateway(sessionmaker(bind=engine))
    app.dependency_overrides[get_link_codes] = lambda: LinkCodeService(broken, ttl_minutes=10)

    assert client.post(f"{PREFIX}/link", json={"code": "ABC234"}).status_code == 503


def test_bank_email_webhook(api, gateway):
    client, env = api(candidate("45.90", "wong", category="food", card_last4="1234"))
    gateway.get_or_create_user("telegram:42", name="Ana")

    response = client.post(
        "/email/inbound",
        data={
            "sender": "servicioalcliente@netinterbank.com.pe",
            "recipient": "gastos+42@example.com",
            "subject": "Consumo Interbank",
            "body-plain": "Consumo aprobado por S/ 45.90 en WONG",
            "Message-Id": "<m1@mail>",
        },
    )

    assert response.status_code == 200
    assert response.json()["status"] == "ok"
    assert env.replies.sent[-1][0] == "telegram:42"


def test_bank_email_webhook_skips_other_senders(api):
    client, env = api()

    response = client.post(
        "/email/inbound",
        data={"sender": "promo@shop.com", "recipient": "gastos+42@example.com", "subject": "Sale"},
    )

    assert response.json() == {"status": "skipped", "reason": "not_bank", "expense_id": None}
    assert client.get("/email/inbound").json()["status"] == "ok"


def test_whatsapp_verification(api):
    client, _ = api()
    params = {"hub.mode": "subscribe", "hub.verify_token": "verify-me", "hub.challenge": "1158201444"}

    ok = client.get("/whatsapp/webhook", params=params)
    assert ok.status_code == 200
    assert ok.text == "1158201444"

    params["hub.verify_token"] = "wrong"
    assert client.get("/whatsapp/webhook", params=params).status_code == 403


def test_whatsapp_webhook_processes_messages(api):
    client, env = api(candidate("50", "uber"))

    assert client.post("/whatsapp/webhook", json={"object": "page"}).status_code == 404

    response = client.post(
        "/whatsapp/webhook",
        json=webhook_payload({"from": "51999", "id": "wamid.1", "type": "text", "text": {"body": "50 uber"}}),
    )

    assert response.json() == {"status": "ok", "received": 1}
    key, text = env.replies.sent[-1]
    assert key == "whatsapp:51999"
    assert "Expense saved" in text
