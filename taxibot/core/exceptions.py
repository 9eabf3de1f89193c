"""
Custom Exception Hierarchy

Every application error carries an ErrorCode and an HTTP status; the
exception handlers in core.middleware turn them into
{"error": {"code", "message", "details"}}.
"""
from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    # Geral (1xxx)
    INTERNAL_ERROR = "ERR_1000"
    VALIDATION_ERROR = "ERR_1001"
    NOT_FOUND = "ERR_1002"

    # Corridas (2xxx)
    RIDE_NOT_FOUND = "ERR_2001"
    RIDE_INVALID_STATUS = "ERR_2002"

    # Conversas (3xxx)
    CONVERSATION_NOT_FOUND = "ERR_3001"
    CONVERSATION_BUSY = "ERR_3002"

    # Serviços externos (5xxx)
    WHATSAPP_ERROR = "ERR_5002"
    EXTERNAL_SERVICE_UNAVAILABLE = "ERR_5003"
    DISPATCH_PROVIDER_ERROR = "ERR_5005"
    INTENT_CLASSIFIER_ERROR = "ERR_5006"
    GEOCODING_ERROR = "ERR_5007"


class AppException(Exception):
    """Base de todos os erros da aplicação"""

    default_code = ErrorCode.INTERNAL_ERROR
    default_status = 500

    def __init__(
        self,
        message: str,
        error_code: ErrorCode | None = None,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.default_code
        self.status_code = status_code or self.default_status
        self.details = dict(details or {})

    def to_dict(self) -> dict[str, Any]:
        return {"error": {"code": self.error_code.value, "message": self.message, "details": self.details}}


class ValidationException(AppException):
    default_code = ErrorCode.VALIDATION_ERROR
    default_status = 400

    def __init__(self, message: str, field: str | None = None, details: dict[str, Any] | None = None):
        super().__init__(message, details=details)
        if field:
            self.details["field"] = field


class NotFoundException(AppException):
    default_code = ErrorCode.NOT_FOUND
    default_status = 404

    def __init__(self, resource: str, identifier: Any, error_code: ErrorCode | None = None):
        super().__init__(
            f"{resource} not found: {identifier}",
            error_code=error_code,
            details={"resource": resource, "identifier": str(identifier)},
        )


class RideException(AppException):
    """Base dos erros de corrida; details sempre traz ride_id"""

    default_status = 400

    def __init__(self, ride_id: str, message: str, details: dict[str, Any] | None = None):
        super().__init__(message, details={"ride_id": ride_id, **(details or {})})


class RideNotFoundError(RideException):
    default_code = ErrorCode.RIDE_NOT_FOUND
    default_status = 404

    def __init__(self, ride_id: str):
        super().__init__(ride_id, f"Ride not found: {ride_id}")


class RideStatusError(RideException):
    """O status atual da corrida não permite a operação (ex: cancelar corrida finalizada)"""

    default_code = ErrorCode.RIDE_INVALID_STATUS
    default_status = 409

    def __init__(self, ride_id: str, current_status: str, operation: str):
        super().__init__(
            ride_id,
            f"Ride {ride_id} has status '{current_status}', cannot {operation}",
            {"current_status": current_status, "operation": operation},
        )


class ConversationLockError(AppException):
    """Outra tarefa está processando a mesma conversa e o lock não foi obtido a tempo"""

    default_code = ErrorCode.CONVERSATION_BUSY
    default_status = 409

    def __init__(self, conversation_key: str, waited_seconds: float):
        super().__init__(
            f"Conversation {conversation_key} is busy",
            details={"conversation": conversation_key, "waited_seconds": waited_seconds},
        )


class ExternalServiceException(AppException):
    """Falha de um serviço externo; subclasses definem service_name e o prefixo da mensagem"""

    default_code = ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE
    default_status = 503
    service_name = "external"
    message_prefix = ""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(f"{self.message_prefix}{message}", details=details)
        self.details["service"] = self.service_name

    @classmethod
    def from_response(cls, operation: str, response: Any, *, message: str | None = None, max_response_chars: int = 500):
        """
        Monta o erro a partir de uma resposta HTTP (httpx.Response).

        O corpo é cortado em max_response_chars para não inflar os logs.
        """
        status_code = getattr(response, "status_code", None)
        body = getattr(response, "text", "") or ""
        return cls(
            message or f"{operation} returned status {status_code}",
            details={"operation": operation, "status_code": status_code, "response_text": body[:max_response_chars]},
        )


class WhatsAppError(ExternalServiceException):
    default_code = ErrorCode.WHATSAPP_ERROR
    service_name = "whatsapp"
    message_prefix = "WhatsApp API error: "


class DispatchProviderError(ExternalServiceException):
    """Machine Global recusou ou falhou a chamada"""

    default_code = ErrorCode.DISPATCH_PROVIDER_ERROR
    service_name = "machine_global"
    message_prefix = "Dispatch provider error: "


class IntentClassifierError(ExternalServiceException):
    """Chamada ao LLM falhou ou devolveu algo que não é o JSON esperado"""

    default_code = ErrorCode.INTENT_CLASSIFIER_ERROR
    service_name = "openai"
    message_prefix = "Intent classifier error: "


class GeocodingError(ExternalServiceException):
    default_code = ErrorCode.GEOCODING_ERROR
    service_name = "nominatim"
    message_prefix = "Geocoding error: "


class CircuitBreakerOpenError(ExternalServiceException):
    """O breaker do serviço está aberto; a chamada nem foi feita"""

    def __init__(self, service_name: str, retry_after_seconds: float):
        self.service_name = service_name
        super().__init__(
            f"{service_name} is temporarily unavailable (circuit breaker open)",
            details={"retry_after_seconds": retry_after_seconds},
        )
