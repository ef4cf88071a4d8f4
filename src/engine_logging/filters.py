"""Record filters: PII masking and a correlation id fallback."""

import logging
import re

# Bangladeshi mobile numbers (+880 1XXXXXXXXX) and generic 3-3-4 numbers
_PHONE = re.compile(
    r"(?<![\w-])(?:(?:\+?88)?01\d{9}|\d{3}[-.\s]?\d{3}[-.\s]?\d{4})(?![\w-])"
)
_EMAIL = re.compile(r"[a-zA-Z0-9_.+-]+@[a-zA-Z0-9-]+\.[a-zA-Z0-9-.]+")
_OTP = re.compile(r"(otp[\"']?\s*[=:]\s*[\"']?)\d{4}", re.IGNORECASE)


def mask_pii(text: str) -> str:
    """Replace emails, phone numbers and pickup codes in text."""
    if "@" in text:
        text = _EMAIL.sub("[EMAIL]", text)
    if any(c.isdigit() for c in text):
        text = _PHONE.sub("[PHONE]", text)
        text = _OTP.sub(r"\1****", text)
    return text


class PIIFilter(logging.Filter):
    """Masks PII in the message template, string arguments and the otp field."""

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = mask_pii(record.msg)
        if isinstance(record.args, tuple):
            record.args = tuple(mask_pii(a) if isinstance(a, str) else a for a in record.args)
        if getattr(record, "otp", None) is not None:
            record.otp = "****"
        return True


class DefaultCorrelationFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.__dict__.setdefault("correlation_id", "-")
        return True
