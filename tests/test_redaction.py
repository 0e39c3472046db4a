"""
Medigate - Redaction Tests
"""

import pytest

from medigate.core.redaction import mask_id, redact, redact_details, redact_value


@pytest.mark.parametrize("text, expected", [
    ("SSN on file: 123-45-6789", "SSN on file: [REDACTED_SSN]"),
    ("ssn 123456789 confirmed", "ssn [REDACTED_SSN] confirmed"),
    ("call 555-010-0001 now", "call [REDACTED_PHONE] now"),
    ("reach me at +15550100001", "reach me at [REDACTED_PHONE]"),
    ("contact jane.doe@example.com today", "contact [REDACTED_EMAIL] today"),
    ("password=hunter2 user=bob", "password=[REDACTED] user=bob"),
    ("refresh_token: abc.def.ghi", "refresh_token: [REDACTED]"),
    ('{"newPassword": "s3cret!"}', '{"newPassword": [REDACTED]}'),
])
def test_redact_patterns(text, expected):
    assert redact(text) == expected


def test_plain_text_is_untouched():
    assert redact("Appointment rescheduled") == "Appointment rescheduled"
    assert redact("") == ""


def test_ids_are_only_stripped_for_audit():
    text = "record 4f9a22b1c not found"
    assert redact(text) == text
    assert redact(text, audit=True) == "record [REDACTED_ID] not found"


def test_redaction_is_idempotent():
    text = "jane@x.io 123-45-6789 +15550100001 token=abc123 record 4f9a22b1c"
    once = redact(text, audit=True)
    assert redact(once, audit=True) == once
    assert "jane@x.io" not in once
    assert "abc123" not in once


def test_details_drop_sensitive_keys():
    details = {
        "password": "hunter2",
        "prescriptionText": "amoxicillin 500mg",
        "note": "call 5550100001",
        "count": 3,
        "active": True,
    }
    assert redact_details(details) == {
        "password": "[REDACTED]",
        "prescriptionText": "[REDACTED]",
        "note": "call [REDACTED_PHONE]",
        "count": 3,
        "active": True,
    }


def test_details_recurse():
    cleaned = redact_details({"contacts": ["a@x.io", {"apiToken": "zzz"}]})
    assert cleaned == {"contacts": ["[REDACTED_EMAIL]", {"apiToken": "[REDACTED]"}]}


def test_numbers_shaped_like_phones_are_redacted():
    assert redact_value(5550100001) == "[REDACTED_PHONE]"
    assert redact_value(42) == 42
    assert redact_value(None) is None


@pytest.mark.parametrize("value, expected", [
    ("P1", "***P1"),
    ("patient-12345", "***2345"),
    ("***2345", "***2345"),
    (None, "unknown"),
    ("", "unknown"),
])
def test_mask_id(value, expected):
    assert mask_id(value) == expected
