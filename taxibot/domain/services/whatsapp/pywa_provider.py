"""
PyWa Provider - BaseWhatsAppProvider sobre a WhatsApp Cloud API (Meta).

Usa pywa_async para envio, reply buttons, pedido de localização e download de
mídia. Todo envio passa por retry com backoff exponencial e pelo circuit breaker.
"""
from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, TypeVar

from taxibot.core.circuit_breaker import CircuitBreaker
from taxibot.core.config import settings
from taxibot.core.exceptions import WhatsAppError
from taxibot.core.logging import get_logger
from taxibot.core.validation import PhoneNumberValidator
from taxibot.domain.services.whatsapp.base_provider import (
    MAX_BUTTON_TITLE_CHARS,
    MAX_REPLY_BUTTONS,
    BaseWhatsAppProvider,
    ReplyButton,
    SentMessage,
)

logger = get_logger(__name__)

T = TypeVar("T")


class PyWaProvider(BaseWhatsAppProvider):
    """Cloud API via pywa, com retry + circuit breaker"""

    def __init__(self, circuit_breaker: CircuitBreaker) -> None:
        self._circuit_breaker = circuit_breaker
        self._max_retries = settings.WHATSAPP_MAX_RETRIES

        # inicialização preguiçosa: pywa só é carregado quando há envio
        self._client = None

    def _get_client(self):
        if self._client is None:
            from pywa_async import WhatsApp as PyWaClient

            self._client = PyWaClient(
                phone_id=settings.WHATSAPP_CLOUD_API_PHONE_ID,
                token=settings.WHATSAPP_CLOUD_API_TOKEN,
            )
        return self._client

    @property
    def provider_name(self) -> str:
        return "pywa"

    @staticmethod
    def normalize_phone(phone: str) -> str:
        """Cloud API quer 5519998765432, sem "+" nem formatação"""
        return PhoneNumberValidator.normalize(phone)

    # ── retry ──

    async def _execute_with_retry(
        self,
        operation: str,
        phone_masked: str,
        func: Callable[[], Awaitable[T]],
    ) -> T:
        """
        Executa func com retry e backoff exponencial (1s, 2s, 4s...).

        Raises:
            WhatsAppError: todas as tentativas falharam
        """
        last_error: Exception | None = None

        for attempt in range(self._max_retries):
            try:
                return await func()
            except Exception as exc:
                last_error = exc
                if attempt < self._max_retries - 1:
                    backoff = 2 ** attempt
                    logger.warning(
                        f"Cloud API {operation} failed, retrying",
                        extra_data={
                            "phone": phone_masked,
                            "error": str(exc),
                            "attempt": attempt + 1,
                            "max_retries": self._max_retries,
                            "backoff_seconds": backoff,
                        },
                    )
                    await asyncio.sleep(backoff)

        raise WhatsAppError(
            message=f"Cloud API {operation} failed after {self._max_retries} attempts",
            details={
                "phone": phone_masked,
                "error": str(last_error),
                "attempts": self._max_retries,
            },
        )

    async def _send(self, operation: str, to: str, func: Callable[[str], Awaitable[Any]]) -> SentMessage:
        to = self.normalize_phone(to)
        phone_masked = PhoneNumberValidator.mask(to)

        async def _with_retry():
            return await self._execute_with_retry(operation, phone_masked, lambda: func(to))

        sent = await self._circuit_breaker.execute(_with_retry)
        return SentMessage(id=getattr(sent, "id", None))

    # ── botões ──

    @staticmethod
    def _build_buttons(buttons: list[ReplyButton]):
        """ReplyButton → pywa Button. A Cloud API aceita no máximo 3."""
        from pywa import types as pywa_types

        if len(buttons) > MAX_REPLY_BUTTONS:
            logger.warning(
                "Too many reply buttons, extra ones dropped",
                extra_data={"count": len(buttons)},
            )
        return [
            pywa_types.Button(title=button.title[:MAX_BUTTON_TITLE_CHARS], callback_data=button.id[:256])
            for button in buttons[:MAX_REPLY_BUTTONS]
        ]

    # ── envio ──

    async def send_text(self, to: str, text: str) -> SentMessage:
        client = self._get_client()

        async def _send_single(phone: str):
            return await client.send_message(to=phone, text=text)

        return await self._send("send_text", to, _send_single)

    async def send_buttons(self, to: str, text: str, buttons: list[ReplyButton]) -> SentMessage:
        if not buttons:
            return await self.send_text(to, text)

        client = self._get_client()
        pywa_buttons = self._build_buttons(buttons)

        async def _send_single(phone: str):
            return await client.send_message(to=phone, text=text, buttons=pywa_buttons)

        return await self._send("send_buttons", to, _send_single)

    async def send_location_request(self, to: str, text: str) -> SentMessage:
        client = self._get_client()

        async def _send_single(phone: str):
            return await client.request_location(to=phone, text=text)

        return await self._send("send_location_request", to, _send_single)

    # ── recebimento ──

    async def mark_read(self, message_id: str) -> None:
        """Best effort: falha só vira log"""
        client = self._get_client()
        try:
            await client.mark_message_as_read(message_id=message_id)
        except Exception as exc:
            logger.warning(
                "Failed to mark message as read",
                extra_data={"message_id": message_id, "error": str(exc)},
            )

    async def download_media(self, media_id: str) -> tuple[bytes, str]:
        client = self._get_client()
        try:
            media = await client.get_media_url(media_id=media_id)
            content = await client.download_media(url=media.url, in_memory=True)
        except Exception as exc:
            raise WhatsAppError(
                message="media download failed",
                details={"media_id": media_id, "error": str(exc)},
            ) from exc
        return content, media.mime_type or "audio/ogg"
