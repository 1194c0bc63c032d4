import asyncio
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from dca_engine.api.dependencies import get_order_service
from dca_engine.core.orders.models import OrderStatus, utc_now
from dca_engine.core.orders.service import OrderService
from dca_engine.main import app

from fakes import FUNDING, OWNER, USDC, WETH, make_order

client = TestClient(app)

STRANGER = "0x8888888888888888888888888888888888888888"


@pytest.fixture(autouse=True)
def service(repository):
    svc = OrderService(repository)
    app.dependency_overrides[get_order_service] = lambda: svc
    yield svc
    app.dependency_overrides.clear()


def _credential_payload(account: str = FUNDING, key_id: str = "key-1") -> dict:
    now = utc_now()
    return {
        "keyId": key_id,
        "boundAccountAddress": account,
        "scope": {"allowedTargets": [], "allowedSelectors": []},
        "validAfter": (now - timedelta(days=1)).isoformat(),
        "validUntil": (now + timedelta(days=60)).isoformat(),
    }


def _create_payload(**overrides) -> dict:
    payload = {
        "ownerAddress": OWNER,
        "fundingAccountAddress": FUNDING,
        "sourceAsset": USDC.to_dict(),
        "targetAsset": WETH.to_dict(),
        "totalAmount": "100",
        "frequency": "daily",
        "totalExecutions": 4,
        "credential": _credential_payload(),
    }
    payload.update(overrides)
    return payload


def _seed(repository, **overrides):
    order = make_order(utc_now().replace(microsecond=0), **overrides)
    asyncio.run(repository.create_order(order))
    return order


class TestCreateOrder:
    def test_created(self):
        resp = client.post("/dca/orders", json=_create_payload())

        assert resp.status_code == 201
        body = resp.json()
        assert body["id"].startswith("dca_")
        assert body["status"] == "active"
        assert body["totalExecutions"] == 4
        assert body["executionsCompleted"] == 0
        assert body["intervalSeconds"] == 86400
        assert body["credentialKeyId"] == "key-1"
        assert body["destinationAddress"] == FUNDING

    def test_platform_fee_applied(self):
        body = client.post("/dca/orders", json=_create_payload(platformFeePercentage="1")).json()
        assert body["totalAmount"] == "99"
        assert body["platformFeePercentage"] == "1"

    def test_same_asset_rejected(self):
        resp = client.post("/dca/orders", json=_create_payload(targetAsset=USDC.to_dict()))
        assert resp.status_code == 400

    def test_credential_for_other_account_rejected(self):
        resp = client.post("/dca/orders", json=_create_payload(credential=_credential_payload(account=OWNER)))
        assert resp.status_code == 400

    def test_schema_validation(self):
        resp = client.post("/dca/orders", json=_create_payload(totalAmount="0"))
        assert resp.status_code == 422


class TestReadOrders:
    def test_get_order(self, repository):
        order = _seed(repository)

        resp = client.get(f"/dca/orders/{order.id}")

        assert resp.status_code == 200
        assert resp.json()["remainingAmount"] == "100"
        assert resp.json()["perExecutionAmount"] == "25"

    def test_get_missing(self):
        assert client.get("/dca/orders/dca_missing").status_code == 404

    def test_executions_of_missing_order(self):
        assert client.get("/dca/orders/dca_missing/executions").status_code == 404

    def test_user_orders_filtered_by_status(self, repository):
        active = _seed(repository)
        _seed(repository, status=OrderStatus.CANCELLED)

        resp = client.get(f"/dca/users/{OWNER}/orders", params={"status": "active"})

        assert resp.status_code == 200
        assert [o["id"] for o in resp.json()] == [active.id]


class TestOwnerActions:
    def test_pause_then_resume(self, repository):
        order = _seed(repository)

        paused = client.post(f"/dca/orders/{order.id}/pause", json={"ownerAddress": OWNER})
        assert paused.status_code == 200
        assert paused.json()["lastErrorCode"] == "paused"

        resumed = client.post(f"/dca/orders/{order.id}/resume", json={"ownerAddress": OWNER})
        assert resumed.status_code == 200
        assert resumed.json()["lastErrorCode"] is None

    def test_stranger_is_forbidden(self, repository):
        order = _seed(repository)
        resp = client.post(f"/dca/orders/{order.id}/pause", json={"ownerAddress": STRANGER})
        assert resp.status_code == 403

    def test_resume_of_running_order_is_bad_request(self, repository):
        order = _seed(repository)
        resp = client.post(f"/dca/orders/{order.id}/resume", json={"ownerAddress": OWNER})
        assert resp.status_code == 400

    def test_update_credential(self, repository):
        order = _seed(repository, last_error_code="credential_expired")

        resp = client.put(
            f"/dca/orders/{order.id}/credential",
            json={"ownerAddress": OWNER, "credential": _credential_payload(key_id="key-2")},
        )

        assert resp.status_code == 200
        assert resp.json()["credentialKeyId"] == "key-2"
        assert resp.json()["lastErrorCode"] is None

    def test_cancel(self, repository):
        order = _seed(repository)

        resp = client.post(f"/dca/orders/{order.id}/cancel", json={"ownerAddress": OWNER})

        assert resp.status_code == 200
        body = resp.json()
        assert body["success"] is True
        assert body["order"]["status"] == "cancelled"
        assert body["fundsSwept"] is False

    def test_cancel_twice_is_bad_request(self, repository):
        order = _seed(repository)
        client.post(f"/dca/orders/{order.id}/cancel", json={"ownerAddress": OWNER})

        resp = client.post(f"/dca/orders/{order.id}/cancel", json={"ownerAddress": OWNER})

        assert resp.status_code == 400

    def test_cancel_with_unconfigured_sweep(self, repository):
        order = _seed(repository)

        body = client.post(
            f"/dca/orders/{order.id}/cancel",
            json={"ownerAddress": OWNER, "sweepRemainingFunds": True},
        ).json()

        assert body["fundsSwept"] is False
        assert body["sweepError"] == "Sweep is not configured"
