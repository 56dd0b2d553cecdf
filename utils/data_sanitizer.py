"""
Data sanitization for logs: provider secrets, purchaser emails and card-adjacent fields
never reach log output unmasked.
"""

import re
import json
import logging
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class DataSanitizer:
    """Masking helpers for provider payloads and purchaser data"""

    EMAIL_PATTERN = re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b")
    SECRET_PATTERN = re.compile(r"\b(sk|rk|pk|whsec)_(live|test)?_?[A-Za-z0-9]{8,}\b")

    # Keys masked wherever they appear in provider payloads or metadata
    SENSITIVE_FIELDS = {
        "client_secret",
        "secret",
        "access_token",
        "authorization",
        "email",
        "email_address",
        "purchaser_email",
        "payer_id",
        "last4",
        "fingerprint",
        "webhook_secret",
    }

    @classmethod
    def sanitize_text(cls, text: str) -> str:
        if not isinstance(text, str):
            text = str(text)
        text = cls.SECRET_PATTERN.sub("[REDACTED-SECRET]", text)
        return cls.EMAIL_PATTERN.sub(lambda m: cls.mask_email(m.group(0)), text)

    @classmethod
    def sanitize_dict(cls, data: Dict[str, Any]) -> Dict[str, Any]:
        sanitized = {}
        for key, value in data.items():
            if str(key).lower() in cls.SENSITIVE_FIELDS and value is not None:
                sanitized[key] = "[REDACTED]"
            elif isinstance(value, dict):
                sanitized[key] = cls.sanitize_dict(value)
            elif isinstance(value, list):
                sanitized[key] = cls.sanitize_list(value)
            elif isinstance(value, str):
                sanitized[key] = cls.sanitize_text(value)
            else:
                sanitized[key] = value
        return sanitized

    @classmethod
    def sanitize_list(cls, data: List[Any]) -> List[Any]:
        result = []
        for item in data:
            if isinstance(item, dict):
                result.append(cls.sanitize_dict(item))
            elif isinstance(item, list):
                result.append(cls.sanitize_list(item))
            elif isinstance(item, str):
                result.append(cls.sanitize_text(item))
            else:
                result.append(item)
        return result

    @staticmethod
    def mask_email(email: Optional[str]) -> str:
        """jane.doe@example.com -> ja***@example.com"""
        if not email or "@" not in email:
            return "[NO_EMAIL]"
        local, _, domain = email.partition("@")
        return f"{local[:2]}***@{domain}"

    @staticmethod
    def mask_api_key(api_key: Optional[str], show_chars: int = 2) -> str:
        if not api_key:
            return "[NO_API_KEY]"
        if len(api_key) <= show_chars * 2:
            return "[REDACTED]"
        return f"[API_KEY:{api_key[:show_chars]}***{api_key[-show_chars:]}]"


def sanitize_for_log(data: Any) -> str:
    """Sanitize any data for safe logging"""
    if isinstance(data, dict):
        return json.dumps(DataSanitizer.sanitize_dict(data), default=str)
    if isinstance(data, list):
        return json.dumps(DataSanitizer.sanitize_list(data), default=str)
    return DataSanitizer.sanitize_text(str(data))


def mask_api_key_safe(api_key: Optional[str]) -> str:
    return DataSanitizer.mask_api_key(api_key)


def mask_email(email: Optional[str]) -> str:
    return DataSanitizer.mask_email(email)
