import pytest
from fastapi.testclient import TestClient

from app.config import Settings
from app.dependencies.db import get_db
from app.dependencies.services import get_ledger_client, get_settings
from app.main import app

from factories import WALLET

USER_HEADER = {"x-user-id": "1"}


@pytest.fixture()
def api_settings():
    return Settings(max_submit_items=3)


@pytest.fixture()
def client(session_factory, ledger, api_settings):
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_ledger_client] = lambda: ledger
    app.dependency_overrides[get_settings] = lambda: api_settings
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def _submit(client, items, headers=USER_HEADER):
    return client.post("/api/v1/data/submit", json={"items": items}, headers=headers)


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "OK"}


def test_missing_user_header_is_unauthorized(client):
    response = _submit(client, [{"id": "a", "type": "location", "content": "{}"}], headers={})

    assert response.status_code == 401
    assert response.json()["error"]["code"] == "UNAUTHORIZED"


def test_submit_location_item_is_credited(client):
    response = _submit(client, [{"id": 1, "type": "location", "content": "{}", "timestamp": 1718000000000}])

    assert response.status_code == 200
    assert response.json() == {"syncedData": [{"id": "1", "reward": 0.2}]}


def test_resubmission_returns_same_rewards(client):
    items = [
        {"id": "a", "type": "sms", "content": "hello"},
        {"id": "b", "type": "contacts", "content": {"name": "Ada"}},
    ]
    first = _submit(client, items).json()
    second = _submit(client, items).json()

    assert first == second
    stats = client.get("/api/v1/user/stats", headers=USER_HEADER).json()
    assert stats["dataCollected"] == 2
    assert stats["totalRewards"] == pytest.approx(0.9)


def test_submit_rejects_oversized_batch(client):
    items = [{"id": str(i), "type": "other", "content": ""} for i in range(4)]

    response = _submit(client, items)

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "VALIDATION_ERROR"


def test_malformed_item_does_not_block_the_rest_of_the_batch(client):
    items = [
        {"id": "good", "type": "location", "content": "{}"},
        {"id": "bad", "type": "t" * 40, "content": "{}"},
        {"type": "location"},
    ]

    response = _submit(client, items)

    assert response.status_code == 200
    assert response.json() == {"syncedData": [{"id": "good", "reward": 0.2}]}


def test_submit_rejects_body_without_item_list(client):
    response = client.post("/api/v1/data/submit", json={"items": "a"}, headers=USER_HEADER)

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "VALIDATION_ERROR"


def test_reward_request_without_wallet_address(client):
    response = client.post("/api/v1/wallet/reward", json={}, headers=USER_HEADER)

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "WALLET_NOT_CONFIGURED"


def test_reward_request_with_nothing_to_settle(client):
    response = client.post("/api/v1/wallet/reward", json={"walletAddress": WALLET}, headers=USER_HEADER)

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is False
    assert body["message"]


def test_reward_request_settles_and_mirrors_transaction(client, ledger):
    _submit(client, [{"id": "a", "type": "location", "content": "{}"}])

    response = client.post("/api/v1/wallet/reward", json={"walletAddress": WALLET}, headers=USER_HEADER)

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    info = body["transactionInfo"]
    assert info["amount"] == pytest.approx(0.2)
    assert info["fromAddress"] == "AriaTreasury"
    assert ledger.submissions[0]["tx_id"] == info["txId"]

    wallet = client.get(f"/api/v1/wallet/{WALLET}", headers=USER_HEADER).json()
    assert [t["id"] for t in wallet["transactions"]] == [info["txId"]]
    assert wallet["transactions"][0]["status"] == "PENDING"

    history = client.get("/api/v1/wallet/transactions", headers=USER_HEADER).json()
    assert history["transactions"] == wallet["transactions"]

    stats = client.get("/api/v1/user/stats", headers=USER_HEADER).json()
    assert stats["walletAddress"] == WALLET
    assert stats["settledRewards"] == 0
    assert stats["pendingRewards"] == pytest.approx(0.2)


def test_reward_request_with_different_address_conflicts(client):
    client.post("/api/v1/wallet/reward", json={"walletAddress": WALLET}, headers=USER_HEADER)

    response = client.post("/api/v1/wallet/reward", json={"walletAddress": "AnotherWallet"}, headers=USER_HEADER)

    assert response.status_code == 409
    assert response.json()["error"]["code"] == "CONFLICT"


def test_wallet_of_another_user_is_not_found(client):
    client.post("/api/v1/wallet/reward", json={"walletAddress": WALLET}, headers=USER_HEADER)

    response = client.get(f"/api/v1/wallet/{WALLET}", headers={"x-user-id": "u_002"})

    assert response.status_code == 404


def test_reconcile_returns_summary(client, ledger):
    _submit(client, [{"id": "a", "type": "location", "content": "{}"}])
    client.post("/api/v1/wallet/reward", json={"walletAddress": WALLET}, headers=USER_HEADER)
    ledger.finalize_all()

    response = client.post("/api/v1/wallet/reconcile", headers=USER_HEADER)

    assert response.status_code == 200
    body = response.json()
    assert body["userId"] == 1
    assert body["balanceSource"] == "chain"
    assert {"totalCredited", "settledAmount", "inFlightAmount", "unsettledAmount",
            "healedTransactions", "releasedBatches"} <= set(body)


def test_routes_publish_their_response_schemas(client):
    paths = client.get("/api/openapi.json").json()["paths"]

    def schema_ref(path, method):
        content = paths[path][method]["responses"]["200"]["content"]["application/json"]
        return content["schema"]["$ref"].rsplit("/", 1)[-1]

    assert schema_ref("/api/v1/data/submit", "post") == "SubmitDataResponse"
    assert schema_ref("/api/v1/user/stats", "get") == "UserStatsResponse"
    assert schema_ref("/api/v1/wallet/reward", "post") == "TokenRewardResponse"
