"""
Input Validation Utilities

- Phone number validation and normalization (E.164, Brazilian local formats)
- Phone masking for logs
- Text sanitization for inbound messages
"""
import re


class ValidationPatterns:
    """Regex patterns for validation"""

    # Brazilian numbers: (11) 91234-5678, 11912345678, +55 11 91234-5678
    PHONE_BRAZIL = re.compile(r"^(?:\+?55)?[1-9]{2}9?\d{8}$")

    # International phone (E.164 format)
    PHONE_INTERNATIONAL = re.compile(r"^\+?[1-9]\d{6,14}$")


class PhoneNumberValidator:
    """Phone number validation and normalization"""

    @staticmethod
    def validate(phone: str, allow_international: bool = True) -> bool:
        if not phone:
            return False

        cleaned = re.sub(r"[\s\-()]", "", phone)

        if ValidationPatterns.PHONE_BRAZIL.match(cleaned):
            return True

        if allow_international and ValidationPatterns.PHONE_INTERNATIONAL.match(cleaned):
            return True

        return False

    @staticmethod
    def normalize(phone: str) -> str:
        """
        Normalize phone number to E.164 (``+5511912345678``).

        Local Brazilian numbers (area code + subscriber, 10 or 11 digits) get
        the +55 prefix; anything else keeps its own country code.
        """
        cleaned = re.sub(r"[^\d+]", "", phone)
        digits = cleaned.lstrip("+")

        if not cleaned.startswith("+") and len(digits) in (10, 11) and not digits.startswith("55"):
            digits = "55" + digits

        return "+" + digits

    @staticmethod
    def mask(phone: str) -> str:
        """Mask phone number for logging (e.g. +55119123****)"""
        if not phone or len(phone) < 4:
            return "****"
        return phone[:-4] + "****"


class TextSanitizer:
    """Text sanitization for inbound messages"""

    @staticmethod
    def sanitize(text: str, max_length: int = 4096) -> str:
        """
        Sanitize text input for safe storage.

        Trims whitespace, enforces max length, removes null bytes and other
        control characters (newlines and tabs are kept, batch lists rely on
        them) and collapses runs of spaces. No HTML escaping.
        """
        if not text:
            return ""

        sanitized = TextSanitizer.remove_control_characters(text.strip())
        sanitized = sanitized[:max_length]
        sanitized = re.sub(r" +", " ", sanitized)

        return sanitized.strip()

    @staticmethod
    def remove_control_characters(text: str) -> str:
        if not text:
            return ""

        # Keep newlines and tabs, remove other control chars
        return "".join(
            char for char in text
            if char >= " " or char in "\n\r\t"
        )
