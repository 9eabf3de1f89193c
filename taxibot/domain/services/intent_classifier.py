"""
Intent Classifier - interpreta a mensagem do cliente.

OpenAIIntentClassifier chama o chat completions da OpenAI (SDK async, modo JSON). Qualquer
falha (timeout, HTTP, circuito aberto, JSON inválido) cai no
KeywordIntentClassifier, que é determinístico e nunca falha.
"""
import json
import re
from typing import Any, Optional, Protocol

from openai import APIError, AsyncOpenAI
from pydantic import BaseModel

from taxibot.core.circuit_breaker import get_openai_circuit_breaker
from taxibot.core.config import settings
from taxibot.core.exceptions import CircuitBreakerOpenError, IntentClassifierError
from taxibot.core.logging import get_logger
from taxibot.core.validation import TextSanitizer
from taxibot.domain.services.pricing_service import VehicleCategory

logger = get_logger(__name__)


class Intent(BaseModel):
    """Resultado da classificação de uma mensagem"""

    has_origin: bool = False
    has_destination: bool = False
    origin_text: Optional[str] = None
    destination_text: Optional[str] = None
    category: Optional[str] = None
    is_confirmation: bool = False
    is_cancellation: bool = False
    is_greeting: bool = False
    is_question: bool = False
    sentiment: str = "neutral"

    @property
    def destination(self) -> Optional[str]:
        """Destino extraído, se houver texto utilizável"""
        if self.has_destination and self.destination_text and self.destination_text.strip():
            return self.destination_text.strip()
        return None


class IntentClassifier(Protocol):
    async def classify(self, text: str, context: Optional[dict[str, Any]] = None) -> Intent: ...


# ==================== Palavras-chave ====================

CONFIRMATION_PATTERN = re.compile(r"\b(sim|confirmo|ok|pode|certo|isso|confirma|confirmar)\b", re.IGNORECASE)
CANCELLATION_PATTERN = re.compile(r"\b(não|nao|cancela|cancelar|desisto|pare)\b", re.IGNORECASE)
GREETING_PATTERN = re.compile(r"\b(oi|olá|ola|bom dia|boa tarde|boa noite|hey|hi)\b", re.IGNORECASE)
QUESTION_PATTERN = re.compile(r"\b(quanto|qual|como|onde|quando)\b", re.IGNORECASE)

_LARGE_CATEGORY_PATTERN = re.compile(r"grande|confort|cat_grande|cat_confort", re.IGNORECASE)


def resolve_category(text: Optional[str]) -> VehicleCategory:
    """
    Texto livre ou id de botão → categoria.

    "grande", "confort", "cat_grande" e "cat_confort" escolhem CARRO_GRANDE;
    qualquer outra coisa (inclusive vazio) fica com CARRO_PEQUENO.
    """
    if text and _LARGE_CATEGORY_PATTERN.search(text):
        return VehicleCategory.CARRO_GRANDE
    return VehicleCategory.CARRO_PEQUENO


class KeywordIntentClassifier:
    """
    Classificação por expressões regulares.

    Não extrai endereços: has_origin/has_destination ficam sempre False.
    """

    async def classify(self, text: str, context: Optional[dict[str, Any]] = None) -> Intent:
        return self.classify_text(text)

    @staticmethod
    def classify_text(text: str) -> Intent:
        normalized = TextSanitizer.normalize_for_matching(text)
        return Intent(
            is_confirmation=bool(CONFIRMATION_PATTERN.search(normalized)),
            is_cancellation=bool(CANCELLATION_PATTERN.search(normalized)),
            is_greeting=bool(GREETING_PATTERN.search(normalized)),
            is_question="?" in normalized or bool(QUESTION_PATTERN.search(normalized)),
        )


# ==================== OpenAI ====================

RIDE_EXTRACTION_PROMPT = """Você é um assistente de IA para a Mi Chame, uma central de táxi em São Paulo, Brasil.
Sua tarefa é extrair informações sobre solicitações de corrida das mensagens dos clientes.

Analise a mensagem e extraia:
1. Se contém um endereço de ORIGEM (ponto de partida)
2. Se contém um endereço de DESTINO (onde o cliente quer ir)
3. Se é uma confirmação (sim, confirmo, ok, pode ser, etc.)
4. Se é um cancelamento (não, cancela, desisto, etc.)
5. Se é uma saudação inicial (oi, olá, bom dia, etc.)
6. Se é uma pergunta (quanto custa, qual o preço, etc.)
7. Categoria preferida do veículo se mencionada (Carro Pequeno ou Carro Grande)
8. O sentimento geral (positive, neutral, negative)

Responda APENAS em JSON válido com as chaves:
hasOrigin, hasDestination, origin {text}, destination {text}, category,
isConfirmation, isCancellation, isGreeting, isQuestion, sentiment."""

_SENTIMENTS = {"positive", "neutral", "negative"}


def parse_llm_intent(content: str) -> Intent:
    """
    JSON do modelo → Intent.

    Raises:
        IntentClassifierError: conteúdo não é um objeto JSON
    """
    try:
        data = json.loads(content)
    except (TypeError, json.JSONDecodeError) as e:
        raise IntentClassifierError("response is not valid JSON", details={"content": str(content)[:200]}) from e
    if not isinstance(data, dict):
        raise IntentClassifierError("response is not a JSON object")

    def _text(key: str) -> Optional[str]:
        value = data.get(key)
        if isinstance(value, dict):
            value = value.get("text")
        if isinstance(value, str) and value.strip():
            return value.strip()
        return None

    sentiment = data.get("sentiment")
    category = data.get("category")
    return Intent(
        has_origin=bool(data.get("hasOrigin")),
        has_destination=bool(data.get("hasDestination")),
        origin_text=_text("origin"),
        destination_text=_text("destination"),
        category=resolve_category(category).value if isinstance(category, str) and category else None,
        is_confirmation=bool(data.get("isConfirmation")),
        is_cancellation=bool(data.get("isCancellation")),
        is_greeting=bool(data.get("isGreeting")),
        is_question=bool(data.get("isQuestion")),
        sentiment=sentiment if isinstance(sentiment, str) and sentiment in _SENTIMENTS else "neutral",
    )


class OpenAIIntentClassifier:
    """Classificador via chat completions, com fallback por palavras-chave"""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        fallback: Optional[KeywordIntentClassifier] = None,
        client: Optional[AsyncOpenAI] = None,
    ):
        self.api_key = api_key if api_key is not None else settings.OPENAI_API_KEY
        self.model = model or settings.OPENAI_MODEL
        self.base_url = (base_url or settings.OPENAI_BASE_URL).rstrip("/")
        self.timeout_seconds = timeout_seconds or settings.OPENAI_TIMEOUT_SECONDS
        self.fallback = fallback or KeywordIntentClassifier()
        self.circuit_breaker = get_openai_circuit_breaker()
        self._client = client

    @property
    def client(self) -> AsyncOpenAI:
        # sem retry do SDK: quem decide é o circuit breaker + fallback
        if self._client is None:
            self._client = AsyncOpenAI(
                api_key=self.api_key,
                base_url=self.base_url,
                timeout=self.timeout_seconds,
                max_retries=0,
            )
        return self._client

    async def classify(self, text: str, context: Optional[dict[str, Any]] = None) -> Intent:
        if not self.api_key or not (text or "").strip():
            return await self.fallback.classify(text, context)

        try:
            return await self.circuit_breaker.execute(self._request, text, context)
        except CircuitBreakerOpenError:
            logger.debug("OpenAI circuit open, using keyword classifier")
        except (APIError, IntentClassifierError) as e:
            logger.warning(
                "Intent classification failed, using keyword classifier",
                extra_data={"error": str(e), "error_type": type(e).__name__},
            )
        return await self.fallback.classify(text, context)

    async def _request(self, text: str, context: Optional[dict[str, Any]]) -> Intent:
        system_prompt = RIDE_EXTRACTION_PROMPT
        if context:
            system_prompt += "\n\nContexto da conversa atual:\n" + json.dumps(context, ensure_ascii=False, default=str)

        completion = await self.client.chat.completions.create(
            model=self.model,
            temperature=0.3,
            response_format={"type": "json_object"},
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": text},
            ],
        )
        if not completion.choices or not completion.choices[0].message.content:
            raise IntentClassifierError("empty completion")
        return parse_llm_intent(completion.choices[0].message.content)


_classifier: Optional[IntentClassifier] = None


def get_intent_classifier() -> IntentClassifier:
    """Default classifier (OpenAI com fallback)"""
    global _classifier
    if _classifier is None:
        _classifier = OpenAIIntentClassifier()
    return _classifier


def reset_intent_classifier() -> None:
    global _classifier
    _classifier = None
