import json

import httpx
import pytest

from food_ordering.core.exceptions import GatewayError
from food_ordering.services.payment.base import sign_payload
from food_ordering.services.payment.paystack import PaystackGateway, parse_gateway_time

SECRET = "sk_test_123"
WEBHOOK_SECRET = "whsec_paystack"


def _gateway(handler) -> PaystackGateway:
    return PaystackGateway(
        secret_key=SECRET,
        webhook_secret=WEBHOOK_SECRET,
        base_url="https://api.paystack.test",
        currency="NGN",
        transport=httpx.MockTransport(handler),
    )


def _ok(data: dict) -> httpx.Response:
    return httpx.Response(200, json={"status": True, "message": "ok", "data": data})


class TestPaystackRequests:
    async def test_initialize_sends_minor_units(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["auth"] = request.headers["Authorization"]
            seen["body"] = json.loads(request.content)
            return _ok({
                "authorization_url": "https://checkout.paystack.com/abc",
                "access_code": "abc",
                "reference": "PSK-ORDER001-1",
            })

        gateway = _gateway(handler)
        result = await gateway.initialize_transaction(
            "ada@example.com", 520000, "PSK-ORDER001-1",
            callback_url="https://shop.example.com/paid", metadata={"order_id": "o1"},
        )
        await gateway.close()

        assert result.authorization_url == "https://checkout.paystack.com/abc"
        assert seen["path"] == "/transaction/initialize"
        assert seen["auth"] == f"Bearer {SECRET}"
        assert seen["body"] == {
            "email": "ada@example.com",
            "amount": 520000,
            "reference": "PSK-ORDER001-1",
            "currency": "NGN",
            "callback_url": "https://shop.example.com/paid",
            "metadata": {"order_id": "o1"},
        }

    async def test_verify_maps_transaction(self):
        def handler(request):
            assert request.url.path == "/transaction/verify/PSK-ORDER001-1"
            return _ok({
                "status": "Success",
                "reference": "PSK-ORDER001-1",
                "paid_at": "2024-05-01T10:00:00.000Z",
                "gateway_response": "Approved",
                "metadata": "",
                "authorization": {
                    "authorization_code": "AUTH_x1",
                    "signature": "SIG_1",
                    "reusable": True,
                    "last4": "4081",
                },
            })

        result = await _gateway(handler).verify_transaction("PSK-ORDER001-1")

        assert result.is_success
        assert result.paid_at.year == 2024
        assert result.metadata == {}
        assert result.authorization.authorization_code == "AUTH_x1"
        assert result.authorization.reusable

    async def test_charge_authorization(self):
        def handler(request):
            body = json.loads(request.content)
            assert body["authorization_code"] == "AUTH_x1"
            return _ok({"status": "failed", "reference": body["reference"], "gateway_response": "Declined"})

        result = await _gateway(handler).charge_authorization("ada@example.com", 650000, "AUTH_x1", "PSK-AUTO-1")
        assert result.status == "failed"
        assert result.gateway_response == "Declined"

    @pytest.mark.parametrize("response", [
        httpx.Response(500, json={"status": False, "message": "boom"}),
        httpx.Response(200, json={"status": False, "message": "Invalid key"}),
        httpx.Response(200, json={"status": True, "data": "not-a-dict"}),
        httpx.Response(200, text="<html>gateway down</html>"),
    ])
    async def test_bad_envelopes_become_gateway_errors(self, response):
        gateway = _gateway(lambda request: response)
        with pytest.raises(GatewayError) as exc_info:
            await gateway.verify_transaction("PSK-ORDER001-1")
        assert exc_info.value.status_code == 502
        assert "boom" not in exc_info.value.to_dict()["error"]

    async def test_timeouts_become_gateway_errors(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        with pytest.raises(GatewayError):
            await _gateway(handler).verify_transaction("PSK-ORDER001-1")

    async def test_initialize_without_checkout_url(self):
        with pytest.raises(GatewayError):
            await _gateway(lambda request: _ok({"reference": "r"})).initialize_transaction(
                "ada@example.com", 100, "PSK-ORDER001-1"
            )

    def test_requires_secret_key(self, monkeypatch):
        from food_ordering.core.config import get_settings
        monkeypatch.setattr(get_settings(), "paystack_secret_key", None)
        with pytest.raises(ValueError):
            PaystackGateway()


class TestPaystackWebhooks:
    def test_signature(self):
        gateway = _gateway(lambda request: _ok({}))
        body = b'{"event":"charge.success"}'
        signature = sign_payload(WEBHOOK_SECRET, body)

        assert gateway.verify_webhook_signature(body, signature)
        assert gateway.verify_webhook_signature(body, signature.upper())
        assert not gateway.verify_webhook_signature(body + b" ", signature)
        assert not gateway.verify_webhook_signature(body, sign_payload("other", body))
        assert not gateway.verify_webhook_signature(body, None)

    def test_parse_gateway_time(self):
        assert parse_gateway_time("nonsense") is None
        assert parse_gateway_time(None) is None
        assert parse_gateway_time("2024-05-01T10:00:00Z").tzinfo is not None
