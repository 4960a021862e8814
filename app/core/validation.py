"""
Input Validation Utilities

- WhatsApp identifier handling (phone numbers, chat ids like ``123@c.us``)
- Session / tenant identifier validation
- Email extraction for the order info step
- Text and file-name sanitization
"""
import re
import unicodedata


class ValidationPatterns:
    """Regex patterns for validation"""

    # International phone (E.164 without the +, as WhatsApp uses it)
    PHONE_DIGITS = re.compile(r"^\+?[1-9]\d{6,14}$")

    # מזהה session/tenant: אותיות, ספרות, מקף וקו תחתון — משמש גם כשם תיקייה
    IDENTIFIER = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_\-]{0,63}$")

    EMAIL = re.compile(r"[A-Za-z0-9._%+\-]+@[A-Za-z0-9.\-]+\.[A-Za-z]{2,}")

    # תווים אסורים בשם קובץ
    UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9._\-]+")


class PhoneNumberValidator:
    """WhatsApp identifier normalization and masking"""

    CONTACT_SUFFIX = "@c.us"
    GROUP_SUFFIX = "@g.us"
    STATUS_BROADCAST = "status@broadcast"

    @staticmethod
    def validate(phone: str) -> bool:
        if not phone:
            return False
        cleaned = re.sub(r"[\s\-()]", "", phone)
        return bool(ValidationPatterns.PHONE_DIGITS.match(cleaned))

    @staticmethod
    def normalize(phone: str) -> str:
        """Digits only, no leading + (the form the gateway expects)"""
        return re.sub(r"\D", "", phone)

    @classmethod
    def to_chat_id(cls, identifier: str) -> str:
        """``+33 6 12 34 56 78`` → ``33612345678@c.us``; chat ids pass through"""
        if "@" in identifier:
            return identifier
        return f"{cls.normalize(identifier)}{cls.CONTACT_SUFFIX}"

    @staticmethod
    def strip_chat_suffix(chat_id: str) -> str:
        """``33612345678@c.us`` → ``33612345678``"""
        return chat_id.split("@", 1)[0]

    @classmethod
    def is_group(cls, chat_id: str) -> bool:
        return chat_id.endswith(cls.GROUP_SUFFIX)

    @staticmethod
    def mask(phone: str) -> str:
        """
        Mask an identifier for logging (privacy).

        Examples:
            "33612345678@c.us" → "3361234****"
        """
        if not phone:
            return "****"
        bare = phone.split("@", 1)[0]
        if len(bare) < 4:
            return "****"
        return bare[:-4] + "****"


class IdentifierValidator:
    """Session and tenant ids double as directory names — keep them boring"""

    @staticmethod
    def validate(value: str) -> bool:
        return bool(value) and bool(ValidationPatterns.IDENTIFIER.match(value))


def extract_email(text: str) -> str | None:
    """First email-looking token in the text, or None"""
    if not text:
        return None
    match = ValidationPatterns.EMAIL.search(text)
    return match.group(0) if match else None


class TextSanitizer:
    """Text sanitization for storage and logging"""

    @staticmethod
    def sanitize(text: str, max_length: int = 1000) -> str:
        """
        Trim, cap length, drop null bytes and collapse runs of spaces.

        Does NOT HTML-escape; messages go back to WhatsApp as plain text.
        """
        if not text:
            return ""

        sanitized = text.strip()[:max_length]
        sanitized = sanitized.replace("\x00", "")
        sanitized = re.sub(r" +", " ", sanitized)
        return sanitized

    @staticmethod
    def truncate(text: str, max_length: int = 80) -> str:
        """Shorten text for log previews"""
        if not text or len(text) <= max_length:
            return text or ""
        return text[: max_length - 3] + "..."


def sanitize_filename(name: str, max_length: int = 100) -> str:
    """
    Reduce an uploaded file name to ``[A-Za-z0-9._-]``.

    Path components are discarded so a crafted name cannot escape the
    tenant's directory.
    """
    if not name:
        return ""
    base = name.replace("\\", "/").rsplit("/", 1)[-1]
    base = unicodedata.normalize("NFKD", base).encode("ascii", "ignore").decode("ascii")
    base = ValidationPatterns.UNSAFE_FILENAME_CHARS.sub("_", base).strip("._")
    return base[-max_length:]
