"""
Tests for the HTTP middleware stack (correlation id, PII masking, security
headers, webhook rate limit, exception handlers)
"""
from types import SimpleNamespace
from unittest.mock import patch

import pytest
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import PlainTextResponse
from starlette.routing import Route
from starlette.testclient import TestClient

from taxibot.core.exceptions import AppException, ErrorCode, RideNotFoundError
from taxibot.core.middleware import (
    CorrelationIdMiddleware,
    SecurityHeadersMiddleware,
    WebhookRateLimitMiddleware,
    _mask_path_pii,
    app_exception_handler,
    generic_exception_handler,
)


def _hello(request: Request) -> PlainTextResponse:
    return PlainTextResponse("ok")


def _webhook(request: Request) -> PlainTextResponse:
    return PlainTextResponse("webhook ok")


def _ride_missing(request: Request) -> PlainTextResponse:
    raise RideNotFoundError("abc")


def _boom(request: Request) -> PlainTextResponse:
    raise ValueError("falha interna com dado sensível")


def _build_app(middlewares: list[tuple] | None = None) -> Starlette:
    app = Starlette(routes=[
        Route("/test", _hello),
        Route("/api/whatsapp/webhook", _webhook, methods=["GET", "POST"]),
        Route("/ride-missing", _ride_missing),
        Route("/boom", _boom),
    ])
    for mw_class, kwargs in middlewares or []:
        app.add_middleware(mw_class, **kwargs)
    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)
    return app


class TestMaskPathPii:

    @pytest.mark.unit
    def test_masks_brazilian_phone(self):
        masked = _mask_path_pii("/api/customers/5519998765432/rides")
        assert masked == "/api/customers/5519*****5432/rides"

    @pytest.mark.unit
    def test_plain_path_unchanged(self):
        assert _mask_path_pii("/api/rides") == "/api/rides"

    @pytest.mark.unit
    def test_short_numbers_unchanged(self):
        assert _mask_path_pii("/api/conversations/12345") == "/api/conversations/12345"


class TestCorrelationIdMiddleware:

    @pytest.mark.unit
    def test_generates_id(self):
        with TestClient(_build_app([(CorrelationIdMiddleware, {})])) as client:
            response = client.get("/test")
        assert len(response.headers["x-correlation-id"]) == 8

    @pytest.mark.unit
    def test_keeps_incoming_id(self):
        with TestClient(_build_app([(CorrelationIdMiddleware, {})])) as client:
            response = client.get("/test", headers={"X-Correlation-ID": "corrida-42"})
        assert response.headers["x-correlation-id"] == "corrida-42"


class TestSecurityHeaders:

    @pytest.mark.unit
    def test_production_headers(self):
        with TestClient(_build_app([(SecurityHeadersMiddleware, {"debug": False})])) as client:
            response = client.get("/test")

        assert response.headers["x-content-type-options"] == "nosniff"
        assert response.headers["content-security-policy"] == "upgrade-insecure-requests"
        assert "max-age=31536000" in response.headers["strict-transport-security"]

    @pytest.mark.unit
    def test_debug_skips_hsts(self):
        with TestClient(_build_app([(SecurityHeadersMiddleware, {"debug": True})])) as client:
            response = client.get("/test")

        assert response.headers["x-content-type-options"] == "nosniff"
        assert "strict-transport-security" not in response.headers
        assert "content-security-policy" not in response.headers


class TestWebhookRateLimit:

    @pytest.mark.unit
    def test_blocks_after_limit(self):
        app = _build_app([(WebhookRateLimitMiddleware, {"max_requests": 2, "window_seconds": 60})])
        with TestClient(app) as client:
            codes = [client.post("/api/whatsapp/webhook").status_code for _ in range(3)]
            blocked = client.post("/api/whatsapp/webhook")

        assert codes == [200, 200, 429]
        assert blocked.headers["retry-after"] == "60"

    @pytest.mark.unit
    def test_other_paths_not_limited(self):
        app = _build_app([(WebhookRateLimitMiddleware, {"max_requests": 1, "window_seconds": 60})])
        with TestClient(app) as client:
            codes = [client.get("/test").status_code for _ in range(5)]
        assert codes == [200] * 5

    @pytest.mark.unit
    def test_idle_clients_are_evicted(self):
        clock = SimpleNamespace(now=1000.0)
        limiter = WebhookRateLimitMiddleware(Starlette(), max_requests=5, window_seconds=60)

        with patch("taxibot.core.middleware.time") as fake_time:
            fake_time.monotonic.side_effect = lambda: clock.now
            for i in range(50):
                assert limiter._allow(f"10.0.0.{i}")
            assert len(limiter._hits) == 50

            clock.now += 61
            assert limiter._allow("10.0.1.1")

        assert list(limiter._hits) == ["10.0.1.1"]

    @pytest.mark.unit
    def test_active_client_survives_sweep(self):
        clock = SimpleNamespace(now=1000.0)
        limiter = WebhookRateLimitMiddleware(Starlette(), max_requests=5, window_seconds=60)

        with patch("taxibot.core.middleware.time") as fake_time:
            fake_time.monotonic.side_effect = lambda: clock.now
            limiter._allow("10.0.0.1")
            clock.now += 30
            limiter._allow("10.0.0.2")
            clock.now += 40
            limiter._allow("10.0.0.3")

        # .1 ficou ocioso por 70 s; .2 ainda está dentro da janela
        assert sorted(limiter._hits) == ["10.0.0.2", "10.0.0.3"]
        assert len(limiter._hits["10.0.0.2"]) == 1


class TestExceptionHandlers:

    @pytest.mark.unit
    def test_app_exception_becomes_json(self):
        with TestClient(_build_app([(CorrelationIdMiddleware, {})])) as client:
            response = client.get("/ride-missing")

        assert response.status_code == 404
        body = response.json()
        assert body["error"]["code"] == ErrorCode.RIDE_NOT_FOUND.value
        assert body["error"]["details"] == {"ride_id": "abc"}

    @pytest.mark.unit
    def test_unexpected_error_hides_details(self):
        with TestClient(_build_app(), raise_server_exceptions=False) as client:
            response = client.get("/boom")

        assert response.status_code == 500
        assert response.json()["error"]["code"] == ErrorCode.INTERNAL_ERROR.value
        assert "sensível" not in response.text
