"""
Input Validation Utilities

- Phone numbers (Brazilian format, as delivered by WhatsApp)
- Free-text sanitization for addresses typed by customers
"""
import re


class ValidationPatterns:
    """Regex patterns for validation"""

    # Brasil: 55 + DDD (2 dígitos) + 8 ou 9 dígitos
    PHONE_BRAZIL = re.compile(r"^55[1-9]\d(?:9\d{8}|\d{8})$")

    # E.164 sem o "+", como a Cloud API entrega
    PHONE_INTERNATIONAL = re.compile(r"^[1-9]\d{7,14}$")

    CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")


class PhoneNumberValidator:
    """Phone number validation and normalization"""

    @staticmethod
    def normalize(phone: str) -> str:
        """
        Normaliza para dígitos com DDI, formato usado pela Cloud API.

        "(19) 99876-5432" → "5519998765432"
        "019998765432"    → "5519998765432"
        "+5519998765432"  → "5519998765432"
        """
        digits = re.sub(r"\D", "", phone or "")
        digits = digits.lstrip("0")
        if digits and len(digits) <= 11:
            digits = "55" + digits
        return digits

    @staticmethod
    def validate(phone: str, allow_international: bool = True) -> bool:
        """
        Validate phone number format.

        Args:
            phone: Phone number to validate (any formatting)
            allow_international: Accept non-Brazilian E.164 numbers

        Returns:
            True if valid, False otherwise
        """
        if not phone:
            return False

        normalized = PhoneNumberValidator.normalize(phone)
        if ValidationPatterns.PHONE_BRAZIL.match(normalized):
            return True

        return bool(allow_international and ValidationPatterns.PHONE_INTERNATIONAL.match(normalized))

    @staticmethod
    def mask(phone: str) -> str:
        """
        Mask phone number for logging (privacy).

        Returns:
            Masked phone number (e.g., 55199987****)
        """
        if not phone or len(phone) < 4:
            return "****"
        return phone[:-4] + "****"


class TextSanitizer:
    """Text sanitization for customer input"""

    @staticmethod
    def sanitize(text: str, max_length: int = 1000) -> str:
        """
        Limpa texto para armazenamento: remove caracteres de controle,
        colapsa espaços e corta no tamanho máximo. Quebras de linha são mantidas.
        """
        if not text:
            return ""

        sanitized = ValidationPatterns.CONTROL_CHARS.sub("", text)
        sanitized = re.sub(r"[ \t]+", " ", sanitized).strip()
        return sanitized[:max_length]

    @staticmethod
    def normalize_for_matching(text: str) -> str:
        """Minúsculas e espaços colapsados, para comparar com palavras-chave"""
        return re.sub(r"\s+", " ", (text or "").strip().lower())
