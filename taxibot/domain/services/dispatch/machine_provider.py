"""
Machine Global Provider - API de integração da TaxiMachine.

Autenticação: basic auth (usuário/senha) + header "api-key". Toda chamada passa
pelo circuit breaker da Machine Global e tem timeout de MACHINE_TIMEOUT_SECONDS.
"""
from __future__ import annotations

from typing import Any, Optional

import httpx

from taxibot.core.circuit_breaker import CircuitBreaker
from taxibot.core.config import settings
from taxibot.core.exceptions import DispatchProviderError
from taxibot.core.logging import get_logger
from taxibot.core.validation import PhoneNumberValidator
from taxibot.domain.services.dispatch.base_provider import (
    BaseDispatchProvider,
    Location,
    Passenger,
    ProviderCallback,
    ProviderWebhook,
    Quote,
    WebhookType,
    parse_callback_payload,
)

logger = get_logger(__name__)


def build_location(location: Location) -> dict[str, Any]:
    """
    Location → formato da Machine Global.

    Coordenadas só vão quando existem, e sempre como string; lat/lng vazios
    fazem a API recusar a solicitação.
    """
    payload: dict[str, Any] = {}
    if location.address:
        payload["endereco"] = location.address
    if location.latitude is not None:
        payload["lat"] = str(location.latitude)
    if location.longitude is not None:
        payload["lng"] = str(location.longitude)
    return payload


def _error_message(response: httpx.Response) -> str:
    status = response.status_code
    if status == 403:
        rated_by = response.headers.get("mch-rated-by")
        if rated_by:
            return f"access denied (403), api key may be rate-limited: {rated_by}"
        return "access denied (403): invalid credentials or api key"
    if status == 401:
        return "authentication failed (401): invalid username or password"
    if status == 404:
        return "endpoint not found (404): check base url"

    try:
        data = response.json()
    except ValueError:
        return f"returned status {status}"
    if isinstance(data, dict):
        errors = data.get("errors")
        if errors:
            return " | ".join(map(str, errors)) if isinstance(errors, list) else str(errors)
        if data.get("message"):
            return str(data["message"])
    return f"returned status {status}"


class MachineGlobalProvider(BaseDispatchProvider):
    def __init__(
        self,
        circuit_breaker: CircuitBreaker,
        *,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._circuit_breaker = circuit_breaker
        self.base_url = (base_url or settings.MACHINE_GLOBAL_BASE_URL).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.MACHINE_GLOBAL_API_KEY
        self.username = username if username is not None else settings.MACHINE_GLOBAL_USERNAME
        self.password = password if password is not None else settings.MACHINE_GLOBAL_PASSWORD
        self.timeout_seconds = timeout_seconds or settings.MACHINE_TIMEOUT_SECONDS
        # injetável para testes (httpx.MockTransport)
        self._transport = transport

    @property
    def provider_name(self) -> str:
        return "machine_global"

    def has_credentials(self) -> bool:
        return bool(self.api_key and self.username and self.password)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout_seconds,
            auth=(self.username, self.password),
            headers={"api-key": self.api_key, "Content-Type": "application/json"},
            transport=self._transport,
        )

    async def _request(self, operation: str, method: str, path: str, **kwargs) -> dict[str, Any]:
        async def _call() -> dict[str, Any]:
            try:
                async with self._client() as client:
                    response = await client.request(method, path, **kwargs)
            except httpx.TimeoutException as e:
                raise DispatchProviderError(
                    f"{operation} timed out",
                    details={"operation": operation, "timeout_seconds": self.timeout_seconds},
                ) from e
            except httpx.HTTPError as e:
                raise DispatchProviderError(
                    f"{operation} failed: {e}",
                    details={"operation": operation, "error_type": type(e).__name__},
                ) from e

            if response.is_error:
                raise DispatchProviderError.from_response(
                    operation, response, message=f"{operation} {_error_message(response)}"
                )

            try:
                data = response.json()
            except ValueError as e:
                raise DispatchProviderError.from_response(
                    operation, response, message=f"{operation} returned invalid JSON"
                ) from e
            if not isinstance(data, dict):
                raise DispatchProviderError(f"{operation} returned unexpected payload")
            if data.get("success") is False:
                errors = data.get("errors") or ["unknown error"]
                raise DispatchProviderError(
                    f"{operation} rejected: {' | '.join(map(str, errors))}",
                    details={"operation": operation, "errors": errors},
                )
            return data

        logger.info(
            "Machine Global request",
            extra_data={"operation": operation, "method": method, "path": path},
        )
        return await self._circuit_breaker.execute(_call)

    # ── operações ──

    async def quote(self, origin: Location, destination: Location, category: str) -> Quote:
        data = await self._request(
            "quote",
            "POST",
            "/estimarSolicitacao",
            json={
                "categoria_id": settings.machine_category_id(category),
                "partida": build_location(origin),
                "destino": build_location(destination),
            },
        )
        cotacao = data.get("cotacao") or {}
        distance = data.get("distancia_km") or cotacao.get("distanciaKm")
        duration = data.get("tempo_estimado") or cotacao.get("tempoEstimado")
        price = data.get("valor_estimado") or cotacao.get("valorEstimado")

        try:
            quote = Quote(
                distance_km=float(distance),
                duration_min=float(duration),
                price=float(price) if price is not None else None,
            )
        except (TypeError, ValueError) as e:
            raise DispatchProviderError(
                "quote without distance/duration",
                details={"response": {k: data.get(k) for k in ("distancia_km", "tempo_estimado", "cotacao")}},
            ) from e
        if quote.distance_km < 0 or quote.duration_min < 0:
            raise DispatchProviderError("quote with negative distance/duration")
        return quote

    async def create_ride(
        self,
        origin: Location,
        destination: Location,
        passenger: Passenger,
        category: str,
        payment_method: str = "D",
    ) -> str:
        data = await self._request(
            "create_ride",
            "POST",
            "/abrirSolicitacao",
            json={
                "categoria_id": settings.machine_category_id(category),
                "forma_pagamento": payment_method or "D",
                "cliente": {
                    "nome": passenger.name,
                    "telefone": PhoneNumberValidator.normalize(passenger.phone),
                },
                "partida": build_location(origin),
                "destino": build_location(destination),
            },
        )
        corrida = data.get("corrida") if isinstance(data.get("corrida"), dict) else {}
        response = data.get("response") if isinstance(data.get("response"), dict) else {}
        ride_id = (
            data.get("id")
            or corrida.get("id")
            or data.get("solicitacao_id")
            or response.get("id")
            or response.get("solicitacao_id")
        )
        if not ride_id:
            raise DispatchProviderError("create_ride response without ride id")

        logger.info("Machine Global ride created", extra_data={"provider_ride_id": str(ride_id)})
        return str(ride_id)

    async def cancel_ride(self, provider_ride_id: str, reason: str) -> None:
        await self._request(
            "cancel_ride",
            "POST",
            "/cancelar",
            json={"solicitacao_id": provider_ride_id, "motivo": reason or "Cancelado pelo cliente"},
        )

    async def get_status(self, provider_ride_id: str) -> ProviderCallback:
        data = await self._request("get_status", "GET", f"/solicitacao/{provider_ride_id}")
        payload = data.get("corrida") or data.get("response") or data
        if not isinstance(payload, dict):
            raise DispatchProviderError("get_status returned unexpected payload")
        return parse_callback_payload(payload, default_ride_id=provider_ride_id)

    # ── webhooks ──

    async def list_webhooks(self) -> list[ProviderWebhook]:
        data = await self._request("list_webhooks", "GET", "/listarWebhook")
        response = data.get("response") if isinstance(data.get("response"), dict) else data
        webhooks = []
        for item in response.get("webhooks") or []:
            if not isinstance(item, dict) or item.get("id") is None:
                continue
            webhooks.append(
                ProviderWebhook(id=str(item["id"]), type=str(item.get("tipo") or ""), url=str(item.get("url") or ""))
            )
        return webhooks

    async def register_webhook(self, url: str, webhook_type: WebhookType) -> None:
        kind = WebhookType(webhook_type).value
        await self._request("register_webhook", "POST", "/cadastrarWebhook", json={"url": url, "tipo": kind})
        logger.info("Machine Global webhook registered", extra_data={"url": url, "type": kind})

    async def delete_webhook(self, webhook_id: str) -> None:
        await self._request("delete_webhook", "DELETE", f"/deletarWebhook/{webhook_id}")
        logger.info("Machine Global webhook deleted", extra_data={"webhook_id": webhook_id})
