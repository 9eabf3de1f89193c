"""
FastAPI Middleware

Ordem do request: SecurityHeaders -> CorrelationId (+ log) -> RateLimit -> app.
Exceções viram {"error": {...}} com o X-Correlation-ID da request.
"""
import re
import time
from collections import defaultdict, deque
from typing import Callable

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from taxibot.core.exceptions import AppException, ErrorCode
from taxibot.core.logging import get_correlation_id, get_logger, set_conversation_id, set_correlation_id

logger = get_logger(__name__)

# 55 + DDD + número: mantém os 4 primeiros e os 4 últimos dígitos
_PHONE_IN_PATH_RE = re.compile(r"(\+?\d{4})\d{5}(\d{4})")


def _mask_path_pii(path: str) -> str:
    return _PHONE_IN_PATH_RE.sub(r"\1*****\2", path)


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """
    Correlation id por request (header X-Correlation-ID, gerado se ausente)
    e log de início/fim com o path sem telefones.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        correlation_id = set_correlation_id(request.headers.get("X-Correlation-ID"))
        set_conversation_id(None)
        request.state.correlation_id = correlation_id

        safe_path = _mask_path_pii(request.url.path)
        log_fields = {"method": request.method, "path": safe_path}
        logger.info(
            f"Request started: {request.method} {safe_path}",
            extra_data={**log_fields, "client_host": _client_ip(request)},
        )
        started = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                f"Request failed: {request.method} {safe_path}",
                extra_data={**log_fields, "duration_seconds": round(time.perf_counter() - started, 4), "error": str(e)},
                exc_info=True,
            )
            raise

        log = logger.info if response.status_code < 400 else logger.warning
        log(
            f"Request completed: {request.method} {safe_path}",
            extra_data={
                **log_fields,
                "status_code": response.status_code,
                "duration_seconds": round(time.perf_counter() - started, 4),
            },
        )
        response.headers["X-Correlation-ID"] = correlation_id
        return response


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """nosniff sempre; HSTS e CSP upgrade-insecure-requests fora do DEBUG"""

    PRODUCTION_HEADERS = {
        "Content-Security-Policy": "upgrade-insecure-requests",
        "Strict-Transport-Security": "max-age=31536000; includeSubDomains",
    }

    def __init__(self, app: FastAPI, *, debug: bool = False) -> None:
        super().__init__(app)
        self._debug = debug

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        if not self._debug:
            response.headers.update(self.PRODUCTION_HEADERS)
        return response


class WebhookRateLimitMiddleware(BaseHTTPMiddleware):
    """Janela deslizante por IP, só nos paths com /webhook"""

    def __init__(self, app: FastAPI, *, max_requests: int = 300, window_seconds: int = 60) -> None:
        super().__init__(app)
        self._max_requests = max_requests
        self._window_seconds = window_seconds
        self._hits: dict[str, deque[float]] = defaultdict(deque)
        self._last_sweep = 0.0

    def _evict_idle(self, now: float) -> None:
        # no máximo uma varredura por janela
        if now - self._last_sweep < self._window_seconds:
            return
        self._last_sweep = now
        cutoff = now - self._window_seconds
        for ip in [ip for ip, hits in self._hits.items() if not hits or hits[-1] < cutoff]:
            del self._hits[ip]

    def _allow(self, ip: str) -> bool:
        now = time.monotonic()
        self._evict_idle(now)
        hits = self._hits[ip]
        while hits and hits[0] < now - self._window_seconds:
            hits.popleft()
        if len(hits) >= self._max_requests:
            return False
        hits.append(now)
        return True

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        path = request.url.path
        if "/webhook" not in path:
            return await call_next(request)

        client_ip = _client_ip(request)
        if self._allow(client_ip):
            return await call_next(request)

        logger.warning(
            "Rate limit exceeded for webhook",
            extra_data={"client_ip": client_ip, "path": path, "limit": self._max_requests},
        )
        return JSONResponse(
            status_code=429,
            content={"error": "Too many requests. Please try again later."},
            headers={"Retry-After": str(self._window_seconds), "X-Correlation-ID": get_correlation_id()},
        )


def _error_response(status_code: int, content: dict) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=content, headers={"X-Correlation-ID": get_correlation_id()})


async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    logger.warning(
        f"Application exception: {exc.error_code.value}",
        extra_data={"error_code": exc.error_code.value, "message": exc.message, "details": exc.details,
                    "path": _mask_path_pii(request.url.path)},
    )
    return _error_response(exc.status_code, exc.to_dict())


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Erro inesperado: detalhes só no log"""
    logger.error(
        f"Unhandled exception: {type(exc).__name__}",
        extra_data={"exception_type": type(exc).__name__, "message": str(exc), "path": _mask_path_pii(request.url.path)},
        exc_info=True,
    )
    return _error_response(500, AppException("An unexpected error occurred").to_dict())


def setup_middleware(app: FastAPI) -> None:
    from taxibot.core.config import settings

    # o último adicionado é o mais externo
    app.add_middleware(
        WebhookRateLimitMiddleware,
        max_requests=settings.WEBHOOK_RATE_LIMIT_MAX_REQUESTS,
        window_seconds=settings.WEBHOOK_RATE_LIMIT_WINDOW_SECONDS,
    )
    app.add_middleware(CorrelationIdMiddleware)
    app.add_middleware(SecurityHeadersMiddleware, debug=settings.DEBUG)


def setup_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)
