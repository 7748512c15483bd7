import re

from reviewflow.core.errors import InvalidRecipientError

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_PHONE_STRIP_RE = re.compile(r"[\s().\-]")
_E164_RE = re.compile(r"^\+[1-9]\d{7,14}$")


def normalize_phone(value: str | None) -> str | None:
    """Best-effort E.164 form, or None when the value cannot be a phone number.

    Ten bare digits are treated as a North American number.
    """
    if not value:
        return None
    cleaned = _PHONE_STRIP_RE.sub("", value.strip())
    if cleaned.startswith("00"):
        cleaned = f"+{cleaned[2:]}"
    if not cleaned.startswith("+"):
        if not cleaned.isdigit():
            return None
        if len(cleaned) == 10:
            cleaned = f"+1{cleaned}"
        elif len(cleaned) == 11 and cleaned.startswith("1"):
            cleaned = f"+{cleaned}"
        else:
            cleaned = f"+{cleaned}"
    if not _E164_RE.match(cleaned):
        return None
    return cleaned


def require_phone(value: str | None) -> str:
    normalized = normalize_phone(value)
    if not normalized:
        raise InvalidRecipientError("SMS requires a valid E.164 phone number")
    return normalized


def require_email(value: str | None) -> str:
    cleaned = (value or "").strip().lower()
    if not cleaned or not EMAIL_RE.match(cleaned):
        raise InvalidRecipientError("Email requires a non-empty, valid address")
    return cleaned


def phone_lookup_candidates(value: str | None) -> list[str]:
    if not value:
        return []
    candidates = {value.strip()}
    normalized = normalize_phone(value)
    if normalized:
        candidates.add(normalized)
        candidates.add(normalized.lstrip("+"))
        if normalized.startswith("+1") and len(normalized) == 12:
            candidates.add(normalized[2:])
    return sorted(candidate for candidate in candidates if candidate)
