"""
Transcrição de áudio (OpenAI Whisper)

Mensagens de voz são transcritas para texto antes de entrar na máquina de estados.
"""
from typing import Optional, Protocol

from openai import APIError, AsyncOpenAI

from taxibot.core.config import settings
from taxibot.core.logging import get_logger

logger = get_logger(__name__)

AUDIO_NOT_TRANSCRIBED = "[Audio não transcrito]"
AUDIO_UNAVAILABLE = "[Audio não disponível]"


class Transcriber(Protocol):
    async def transcribe(self, audio: bytes, mime_type: str = "audio/ogg") -> Optional[str]: ...


def _extension_for(mime_type: str) -> str:
    if "ogg" in mime_type:
        return "ogg"
    if "mp3" in mime_type or "mpeg" in mime_type:
        return "mp3"
    return "wav"


class WhisperTranscriber:
    """Retorna None em qualquer falha; quem chama usa o placeholder"""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        client: Optional[AsyncOpenAI] = None,
    ):
        self.api_key = api_key if api_key is not None else settings.OPENAI_API_KEY
        self.model = model or settings.OPENAI_TRANSCRIPTION_MODEL
        self.base_url = (base_url or settings.OPENAI_BASE_URL).rstrip("/")
        # áudio demora mais que classificação
        self.timeout_seconds = timeout_seconds or settings.OPENAI_TIMEOUT_SECONDS * 3
        self._client = client

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = AsyncOpenAI(
                api_key=self.api_key,
                base_url=self.base_url,
                timeout=self.timeout_seconds,
                max_retries=1,
            )
        return self._client

    async def transcribe(self, audio: bytes, mime_type: str = "audio/ogg") -> Optional[str]:
        if not self.api_key or not audio:
            return None

        filename = f"audio.{_extension_for(mime_type)}"
        try:
            text = await self.client.audio.transcriptions.create(
                model=self.model,
                file=(filename, audio, mime_type),
                language="pt",
                response_format="text",
            )
        except APIError as e:
            logger.warning(
                "Audio transcription failed",
                extra_data={"error": str(e), "error_type": type(e).__name__},
            )
            return None

        # response_format="text" devolve str; versões antigas do SDK devolvem o objeto
        text = (text if isinstance(text, str) else getattr(text, "text", "")).strip()
        logger.info("Audio transcribed", extra_data={"chars": len(text)})
        return text or None


_transcriber: Optional[Transcriber] = None


def get_transcriber() -> Transcriber:
    global _transcriber
    if _transcriber is None:
        _transcriber = WhisperTranscriber()
    return _transcriber


def reset_transcriber() -> None:
    global _transcriber
    _transcriber = None
