"""
Structured Logging Infrastructure

JSON logs with a correlation id per request/task and the id of the
conversation being processed, so a whole booking can be followed in the logs.
"""
import json
import logging
import sys
import time
import uuid
from contextvars import ContextVar
from datetime import datetime
from functools import wraps
from typing import Any

correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="")
# Conversa em processamento (definida pelo ConversationService / callbacks)
conversation_id_var: ContextVar[str] = ContextVar("conversation_id", default="")

_CONTEXT_VARS = (
    ("correlation_id", correlation_id_var),
    ("conversation_id", conversation_id_var),
)

NOISY_LOGGERS = {
    "httpx": logging.WARNING,
    "httpcore": logging.WARNING,
    "sqlalchemy.engine": logging.WARNING,
    "pywa": logging.WARNING,
    "celery": logging.INFO,
}

TEXT_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | [%(correlation_id)s|%(conversation_id)s] | %(message)s"


class JSONFormatter(logging.Formatter):
    """Uma linha JSON por registro"""

    def __init__(self, app_name: str = "mi-chame") -> None:
        super().__init__()
        self.app_name = app_name

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.utcnow().isoformat() + "Z",
            "app": self.app_name,
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }
        entry.update({key: var.get() for key, var in _CONTEXT_VARS if var.get()})

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        extra_data = getattr(record, "extra_data", None)
        if extra_data is not None:
            entry["extra"] = extra_data

        return json.dumps(entry, ensure_ascii=False, default=str)


class StructuredLogger(logging.Logger):
    """Logger que aceita extra_data={...} em todos os níveis"""

    def _log(
        self,
        level: int,
        msg: object,
        args,
        exc_info=None,
        extra: dict[str, Any] | None = None,
        stack_info: bool = False,
        stacklevel: int = 1,
        extra_data: dict[str, Any] | None = None,
    ) -> None:
        if extra_data:
            extra = {**(extra or {}), "extra_data": extra_data}
        super()._log(
            level, msg, args,
            exc_info=exc_info, extra=extra, stack_info=stack_info, stacklevel=stacklevel + 1,
        )


logging.setLoggerClass(StructuredLogger)


class ContextFilter(logging.Filter):
    """Injeta correlation_id e conversation_id no formato texto (desenvolvimento)"""

    def filter(self, record: logging.LogRecord) -> bool:
        for key, var in _CONTEXT_VARS:
            setattr(record, key, var.get() or "-")
        return True


def setup_logging(level: str = "INFO", json_format: bool = True, app_name: str = "mi-chame") -> None:
    """
    Configura o root logger.

    Args:
        level: DEBUG, INFO, WARNING, ERROR ou CRITICAL
        json_format: linhas JSON em produção, texto legível em desenvolvimento
        app_name: campo "app" de cada registro JSON
    """
    numeric_level = getattr(logging, level.upper())

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(numeric_level)
    if json_format:
        handler.setFormatter(JSONFormatter(app_name=app_name))
    else:
        handler.setFormatter(logging.Formatter(TEXT_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
        handler.addFilter(ContextFilter())

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    root_logger.handlers.clear()
    root_logger.addHandler(handler)

    for name, noisy_level in NOISY_LOGGERS.items():
        logging.getLogger(name).setLevel(noisy_level)


def generate_correlation_id() -> str:
    return uuid.uuid4().hex[:8]


def set_correlation_id(correlation_id: str | None = None) -> str:
    """Define o correlation id do contexto atual (gera um se vier vazio)"""
    cid = correlation_id or generate_correlation_id()
    correlation_id_var.set(cid)
    return cid


def get_correlation_id() -> str:
    """Correlation id atual; gera e guarda um novo se ainda não existir"""
    return correlation_id_var.get() or set_correlation_id()


def set_conversation_id(conversation_id: int | str | None) -> None:
    """Marca os próximos logs deste contexto com a conversa"""
    conversation_id_var.set("" if conversation_id is None else str(conversation_id))


def get_logger(name: str) -> StructuredLogger:
    return logging.getLogger(name)  # type: ignore[return-value]


def log_async_operation(operation_name: str):
    """Loga início, fim e duração de uma coroutine (erros são relançados)"""

    def decorator(func):
        logger = get_logger(func.__module__)

        @wraps(func)
        async def wrapper(*args, **kwargs):
            started = time.perf_counter()
            logger.debug(f"Starting {operation_name}", extra_data={"operation": operation_name, "status": "started"})
            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                logger.error(
                    f"Failed {operation_name}: {e}",
                    extra_data={
                        "operation": operation_name,
                        "status": "failed",
                        "duration_seconds": round(time.perf_counter() - started, 3),
                        "error": str(e),
                    },
                    exc_info=True,
                )
                raise
            logger.info(
                f"Completed {operation_name}",
                extra_data={
                    "operation": operation_name,
                    "status": "completed",
                    "duration_seconds": round(time.perf_counter() - started, 3),
                },
            )
            return result

        return wrapper

    return decorator
