"""Shared utility functions.

get_or_raise:        PK lookup that raises NotFoundError
to_number / to_int:  permissive numeric parsing of request payloads
normalize_bool:      tri-state boolean parsing ("evet", "hayır", "uygun_degil", …)
canonical_item_name: trim + Turkish-locale uppercase
"""
import math
import re
from datetime import datetime, timezone

from budgetflow.core.exceptions import NotFoundError
from budgetflow.models import db

PERIOD_RE = re.compile(r"^\d{2}-\d{4}$")

_TRUE_TOKENS = {
    "1", "true", "yes", "y", "on", "evet", "needed", "uygundur", "uygun",
}
_FALSE_TOKENS = {
    "0", "false", "no", "n", "off", "not", "not_needed", "not-needed", "notneeded",
    "hayir", "hayır", "degil", "değil", "uygun_degil", "uygun_değil",
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def get_or_raise(model, pk, label=None):
    """Fetch a model instance by primary key or raise NotFoundError."""
    obj = db.session.get(model, pk) if pk is not None else None
    if obj is None:
        raise NotFoundError(label or model.__name__, pk)
    return obj


def _finite(number):
    return number if math.isfinite(number) else None


def to_number(value):
    """Parse a loosely-typed number; returns None when absent or invalid.

    Accepts ints, floats and strings with a decimal comma ("66,5").
    NaN and infinities (including overflowing literals such as "1e400")
    count as invalid.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        try:
            return _finite(float(value))
        except OverflowError:
            return None
    text = str(value).strip().replace(" ", "")
    if not text:
        return None
    if "," in text and "." not in text:
        text = text.replace(",", ".")
    try:
        return _finite(float(text))
    except ValueError:
        return None


def to_int(value):
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return None


def normalize_bool(value):
    """Map a loose boolean to True / False / None (undecided)."""
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    token = str(value).strip().lower()
    if not token:
        return None
    if token in _TRUE_TOKENS:
        return True
    if token in _FALSE_TOKENS:
        return False
    return None


def turkish_upper(text: str) -> str:
    """Uppercase with Turkish dotted/dotless i rules."""
    return text.replace("i", "İ").replace("ı", "I").upper()


def canonical_item_name(name) -> str:
    return turkish_upper(str(name or "").strip())


def clean_text(value):
    """Trim a free-text field; empty strings become None."""
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def is_valid_period(period) -> bool:
    """MM-YYYY with a real month."""
    if not isinstance(period, str) or not PERIOD_RE.match(period):
        return False
    return 1 <= int(period[:2]) <= 12
