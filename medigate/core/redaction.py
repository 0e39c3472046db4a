"""
Redaction of protected values.

Strings bound for logs, audit details or client-facing error bodies pass
through redact(). Patterns run in a fixed order and the transformation is
idempotent: redact(redact(s)) == redact(s).

    1. SSN-shaped (9 digits)           -> [REDACTED_SSN]
    2. phone-shaped (10-11 digits)     -> [REDACTED_PHONE]
    3. e-mail addresses                -> [REDACTED_EMAIL]
    4. id-shaped tokens (audit only)   -> [REDACTED_ID]
    5. sensitive key=value pairs       -> key=[REDACTED]
"""

import re
from typing import Any, Mapping

SSN_PATTERN = re.compile(r"(?<![\w-])\d{3}-?\d{2}-?\d{4}(?![\w-])")
PHONE_PATTERN = re.compile(r"(?<![\w+])\+?\(?\d(?:[ .()-]{0,2}\d){9,10}(?!\w)")
EMAIL_PATTERN = re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}")
# 6-20 alphanumerics containing at least one digit, bounded by non-word chars.
ID_PATTERN = re.compile(r"(?<![A-Za-z0-9_])(?=[A-Za-z0-9]*\d)[A-Za-z0-9]{6,20}(?![A-Za-z0-9_])")

SENSITIVE_KEY = re.compile(r"password|token|secret|prescription|ssn|creditcard", re.IGNORECASE)
SENSITIVE_PAIR = re.compile(
    r"""\b([\w-]*(?:password|token|secret|prescription|ssn|creditcard)[\w-]*)"""
    r"""(["']?\s*[=:]\s*)("[^"]*"|'[^']*'|[^\s,;&}]+)""",
    re.IGNORECASE,
)

REDACTED = "[REDACTED]"
MASK_PREFIX = "***"


def redact(text: str, *, audit: bool = False) -> str:
    """
    Remove protected values from a string.

    id-shaped tokens are only stripped when audit=True (audit details);
    error messages keep them so callers can still quote resource ids.
    """
    if not text:
        return text
    result = SSN_PATTERN.sub("[REDACTED_SSN]", text)
    result = PHONE_PATTERN.sub("[REDACTED_PHONE]", result)
    result = EMAIL_PATTERN.sub("[REDACTED_EMAIL]", result)
    if audit:
        result = ID_PATTERN.sub("[REDACTED_ID]", result)
    return SENSITIVE_PAIR.sub(lambda m: f"{m.group(1)}{m.group(2)}{REDACTED}", result)


def redact_value(value: Any, *, audit: bool = False) -> Any:
    """Redact strings and numbers; recurse into mappings and sequences."""
    if value is None or isinstance(value, bool):
        return value
    if isinstance(value, str):
        return redact(value, audit=audit)
    if isinstance(value, (int, float)):
        text = str(value)
        cleaned = redact(text, audit=audit)
        return value if cleaned == text else cleaned
    if isinstance(value, Mapping):
        return redact_details(value, audit=audit)
    if isinstance(value, (list, tuple, set, frozenset)):
        return [redact_value(item, audit=audit) for item in value]
    return redact(str(value), audit=audit)


def redact_details(details: Mapping[str, Any] | None, *, audit: bool = True) -> dict[str, Any]:
    """Redact a details map. Values under sensitive keys are dropped wholesale."""
    if not details:
        return {}
    cleaned: dict[str, Any] = {}
    for key, value in details.items():
        key = str(key)
        if SENSITIVE_KEY.search(key):
            cleaned[key] = REDACTED
        else:
            cleaned[key] = redact_value(value, audit=audit)
    return cleaned


def mask_id(value: Any) -> str:
    """'***' followed by the last four characters; 'unknown' when absent."""
    if value is None or value == "":
        return "unknown"
    text = str(value)
    if text.startswith(MASK_PREFIX):
        return text
    return MASK_PREFIX + text[-4:]
