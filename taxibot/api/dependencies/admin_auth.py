"""
Autenticação por API key da API administrativa (/api/rides, /api/conversations).

Uso:
    @router.get("/rides")
    async def list_rides(_: None = Depends(require_admin_api_key)):
        ...
"""
import hmac

from fastapi import Depends, HTTPException, status
from fastapi.security import APIKeyHeader

from taxibot.core.config import settings
from taxibot.core.logging import get_logger

logger = get_logger(__name__)

_api_key_header = APIKeyHeader(name="X-Admin-API-Key", auto_error=False)


async def require_admin_api_key(
    api_key: str | None = Depends(_api_key_header),
) -> None:
    """
    401 sem header, 403 com chave errada.
    Sem ADMIN_API_KEY configurada a API fica fechada.
    """
    if not settings.ADMIN_API_KEY:
        logger.warning("Admin endpoint denied: ADMIN_API_KEY not configured")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="ADMIN_API_KEY não configurada",
        )

    if not api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Header X-Admin-API-Key obrigatório",
        )

    if not hmac.compare_digest(api_key, settings.ADMIN_API_KEY):
        logger.warning("Admin endpoint denied: invalid API key")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="API key inválida",
        )
