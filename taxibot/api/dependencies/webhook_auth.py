"""
Autenticação dos webhooks.

- WhatsApp Cloud API: assinatura HMAC-SHA256 do corpo (X-Hub-Signature-256)
- Machine Global: token compartilhado opcional (X-Webhook-Token)
"""
import hashlib
import hmac

from fastapi import Header, HTTPException, status

from taxibot.core.config import settings
from taxibot.core.logging import get_logger

logger = get_logger(__name__)


def verify_meta_signature(body: bytes, signature_header: str | None, app_secret: str) -> bool:
    """Confere "sha256=<hex>" contra o HMAC do corpo bruto"""
    if not signature_header or not signature_header.startswith("sha256="):
        return False
    expected = hmac.new(app_secret.encode(), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(signature_header[len("sha256="):], expected)


async def verify_machine_webhook_token(
    x_webhook_token: str | None = Header(None),
) -> None:
    """
    Sem MACHINE_WEBHOOK_SECRET configurado, não valida.
    Header ausente ou diferente: 403.
    """
    expected = settings.MACHINE_WEBHOOK_SECRET
    if not expected:
        return

    if not x_webhook_token:
        logger.warning("Machine webhook without X-Webhook-Token")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Token do webhook ausente",
        )

    if not hmac.compare_digest(x_webhook_token, expected):
        logger.warning("Machine webhook with invalid token")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Token do webhook inválido",
        )
