import re

import httpx
import pytest

from app.services import paystack
from app.services.errors import UpstreamError
from tests.mocks import paystack_response, sign_body


def test_signature_round_trip():
    body = b'{"event":"charge.success","data":{"id":1}}'

    assert paystack.verify_webhook_signature(body, sign_body(body)) is True
    assert paystack.verify_webhook_signature(body, sign_body(body, "sk_other")) is False
    assert paystack.verify_webhook_signature(body + b" ", sign_body(body)) is False
    assert paystack.verify_webhook_signature(body, None) is False


def test_signature_rejected_without_secret(override_settings):
    override_settings(paystack_secret_key="")
    body = b"{}"

    assert paystack.verify_webhook_signature(body, sign_body(body, "")) is False


def test_reference_format():
    assert re.fullmatch(r"SUB-12345678-[0-9a-f]{8}", paystack.generate_reference("12345678-aaaa"))
    assert re.fullmatch(r"SUB-[0-9a-f]{8}", paystack.generate_reference())


def test_initialize_transaction(monkeypatch):
    captured = {}

    def fake_post(url, **kwargs):
        captured["url"] = url
        captured.update(kwargs)
        return paystack_response(
            {"authorization_url": "https://checkout.paystack.com/abc", "reference": "SUB-1"}
        )

    monkeypatch.setattr(paystack.httpx, "post", fake_post)

    data = paystack.initialize_transaction(
        email="ada@example.com",
        amount=500000,
        reference="SUB-1",
        metadata={"subscription_id": "s-1"},
    )

    assert data["authorization_url"] == "https://checkout.paystack.com/abc"
    assert captured["url"].endswith("/transaction/initialize")
    assert captured["headers"] == {"Authorization": "Bearer sk_test_secret"}
    assert captured["json"]["amount"] == 500000
    assert captured["json"]["currency"] == "NGN"
    assert captured["json"]["metadata"] == {"subscription_id": "s-1"}
    assert captured["json"]["callback_url"]


def test_failed_envelope_raises(monkeypatch):
    monkeypatch.setattr(
        paystack.httpx,
        "get",
        lambda url, **kwargs: paystack_response(status=False, message="Transaction not found"),
    )

    with pytest.raises(UpstreamError, match="Transaction not found"):
        paystack.verify_transaction("SUB-missing")


def test_http_error_status_raises(monkeypatch):
    monkeypatch.setattr(
        paystack.httpx, "get", lambda url, **kwargs: paystack_response(status_code=503)
    )

    with pytest.raises(UpstreamError):
        paystack.verify_transaction("SUB-1")


def test_transport_error_raises(monkeypatch):
    def broken(url, **kwargs):
        raise httpx.ConnectError("connection refused")

    monkeypatch.setattr(paystack.httpx, "post", broken)

    with pytest.raises(UpstreamError, match="unavailable"):
        paystack.disable_subscription("SUB_code", "token")


def test_verify_returns_unsuccessful_transaction(monkeypatch):
    monkeypatch.setattr(
        paystack.httpx,
        "get",
        lambda url, **kwargs: paystack_response({"reference": "SUB-1", "status": "abandoned"}),
    )

    assert paystack.verify_transaction("SUB-1")["status"] == "abandoned"


def test_missing_secret_key(override_settings):
    override_settings(paystack_secret_key="")

    with pytest.raises(ValueError):
        paystack.verify_transaction("SUB-1")


@pytest.mark.parametrize("status_code", [400, 404])
def test_verify_unknown_reference_is_not_found(monkeypatch, status_code):
    monkeypatch.setattr(
        paystack.httpx,
        "get",
        lambda url, **kwargs: paystack_response(
            status=False, message="Transaction reference not found", status_code=status_code
        ),
    )

    result = paystack.verify_transaction("SUB-typo")

    assert result == {
        "reference": "SUB-typo",
        "status": "not_found",
        "message": "Transaction reference not found",
    }


def test_unreadable_body_raises(monkeypatch):
    def html_page(url, **kwargs):
        return httpx.Response(
            200, text="<html>Bad gateway</html>", request=httpx.Request("GET", url)
        )

    monkeypatch.setattr(paystack.httpx, "get", html_page)

    with pytest.raises(UpstreamError, match="unreadable"):
        paystack.verify_transaction("SUB-1")


def test_unreadable_client_error_raises(monkeypatch):
    def html_page(url, **kwargs):
        return httpx.Response(400, text="Bad request", request=httpx.Request("GET", url))

    monkeypatch.setattr(paystack.httpx, "get", html_page)

    with pytest.raises(UpstreamError):
        paystack.verify_transaction("SUB-1")


def test_fetch_subscription(monkeypatch):
    captured = {}

    def fake_get(url, **kwargs):
        captured["url"] = url
        return paystack_response({"subscription_code": "SUB_code", "email_token": "tok_1"})

    monkeypatch.setattr(paystack.httpx, "get", fake_get)

    data = paystack.fetch_subscription("SUB_code")

    assert data["email_token"] == "tok_1"
    assert captured["url"].endswith("/subscription/SUB_code")


def test_disable_subscription_sends_code_and_token(monkeypatch):
    captured = {}

    def fake_post(url, **kwargs):
        captured["url"] = url
        captured.update(kwargs)
        return paystack_response(message="Subscription disabled successfully")

    monkeypatch.setattr(paystack.httpx, "post", fake_post)

    paystack.disable_subscription("SUB_code", "tok_1")

    assert captured["url"].endswith("/subscription/disable")
    assert captured["json"] == {"code": "SUB_code", "token": "tok_1"}
