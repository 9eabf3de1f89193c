"""
Lock distribuído por conversa.

Mensagens do cliente, reenvios do webhook e callbacks do provedor podem chegar
ao mesmo tempo para a mesma conversa. Toda transição de estado roda dentro de
ConversationLock, um wrapper do redis.asyncio.lock.Lock (token próprio,
SET NX PX, liberação só pelo dono).
"""
from redis.asyncio.lock import Lock
from redis.exceptions import LockNotOwnedError

from taxibot.core import redis_client
from taxibot.core.config import settings
from taxibot.core.exceptions import ConversationLockError
from taxibot.core.logging import get_logger

logger = get_logger(__name__)

_LOCK_PREFIX = "lock:conversation:"
_POLL_INTERVAL_SECONDS = 0.05


def conversation_lock_key(customer_phone: str) -> str:
    """Chave do lock. Usa o telefone do cliente porque a conversa pode
    ainda não existir (primeira mensagem) ou ser trocada por timeout."""
    return f"{_LOCK_PREFIX}{customer_phone}"


class ConversationLock:
    """
    Async context manager:

        async with ConversationLock(conversation_lock_key(phone)):
            ...

    Raises:
        ConversationLockError: se o lock não for obtido em wait_seconds
    """

    def __init__(
        self,
        key: str,
        *,
        ttl_seconds: int | None = None,
        wait_seconds: float | None = None,
    ) -> None:
        self.key = key
        self.ttl_seconds = ttl_seconds or settings.CONVERSATION_LOCK_TTL_SECONDS
        self.wait_seconds = (
            wait_seconds if wait_seconds is not None else settings.CONVERSATION_LOCK_WAIT_SECONDS
        )
        self._lock: Lock | None = None

    async def acquire(self) -> None:
        redis = await redis_client.get_redis()
        lock = redis.lock(
            self.key,
            timeout=self.ttl_seconds,
            sleep=_POLL_INTERVAL_SECONDS,
            blocking_timeout=self.wait_seconds,
        )
        if not await lock.acquire():
            logger.warning(
                "Conversation lock timeout",
                extra_data={"key": self.key, "waited_seconds": self.wait_seconds},
            )
            raise ConversationLockError(self.key, self.wait_seconds)
        self._lock = lock

    async def release(self) -> None:
        lock, self._lock = self._lock, None
        if lock is None:
            return
        try:
            await lock.release()
        except LockNotOwnedError:
            # TTL expirou no meio do processamento; outro worker pode já ter o lock
            logger.warning(
                "Conversation lock expired before release",
                extra_data={"key": self.key, "ttl_seconds": self.ttl_seconds},
            )

    async def __aenter__(self) -> "ConversationLock":
        await self.acquire()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.release()
