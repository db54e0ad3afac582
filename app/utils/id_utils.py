"""
Identifier and value coercion utilities for Sanity documents.

This module handles the id conventions used across the CMS:
- Published ids: opaque strings like "order.cs_test_123" or "7f1c..."
- Draft ids: the same id prefixed with "drafts."
- Order numbers: "FAS-" followed by six digits
"""

import json
import logging
import math
import re
import uuid
from datetime import datetime, timezone
from typing import Any, List, Optional

logger = logging.getLogger(__name__)

DRAFT_PREFIX = "drafts."
ORDER_NUMBER_PREFIX = "FAS"

_ORDER_NUMBER_RE = re.compile(r"^FAS-\d{6}$")
_SESSION_PREFIX_RE = re.compile(r"^cs_(?:test|live)_", re.IGNORECASE)
_CMS_ID_RE = re.compile(r"^(drafts\.)?[A-Za-z0-9][A-Za-z0-9._-]{7,}$")


def normalize_id(value: Any) -> Optional[str]:
    """
    Return the published id for a document id.

    Args:
        value: Document id, possibly a draft id

    Returns:
        The trimmed id without the "drafts." prefix, or None when blank
    """
    if value is None:
        return None
    trimmed = str(value).strip()
    if not trimmed:
        return None
    if trimmed.startswith(DRAFT_PREFIX):
        return trimmed[len(DRAFT_PREFIX):] or None
    return trimmed


def id_variants(value: Any) -> List[str]:
    """
    Return the published and draft variants of an id.

    Args:
        value: Document id in either form

    Returns:
        [published_id, "drafts." + published_id], or [] when blank
    """
    published = normalize_id(value)
    if not published:
        return []
    return [published, f"{DRAFT_PREFIX}{published}"]


def is_draft_id(value: Any) -> bool:
    """Check whether an id points at a draft document."""
    return isinstance(value, str) and value.strip().startswith(DRAFT_PREFIX)


def looks_like_cms_id(value: Any) -> bool:
    """
    Heuristic for values that are Sanity document ids rather than slugs or titles.

    Sanity ids have no spaces and are either uuid-like or dotted ("product.abc").
    """
    if not isinstance(value, str):
        return False
    candidate = value.strip()
    if not _CMS_ID_RE.match(candidate):
        return False
    return "." in candidate or "-" in candidate or any(ch.isdigit() for ch in candidate)


def reference(value: Any, weak: bool = False) -> Optional[dict]:
    """
    Build a reference object pointing at the published id.

    Args:
        value: Target document id
        weak: Whether to build a weak reference

    Returns:
        {"_type": "reference", "_ref": id} or None when the id is blank
    """
    ref_id = normalize_id(value)
    if not ref_id:
        return None
    ref = {"_type": "reference", "_ref": ref_id}
    if weak:
        ref["_weak"] = True
    return ref


def ref_id(value: Any) -> Optional[str]:
    """Extract the published target id from a reference object or string."""
    if isinstance(value, dict):
        return normalize_id(value.get("_ref") or value.get("_id"))
    return normalize_id(value)


def new_key() -> str:
    """Generate an array item _key."""
    return uuid.uuid4().hex[:12]


def slugify(value: Any, max_length: int = 96) -> Optional[str]:
    """
    Convert free text into a URL slug.

    Args:
        value: Source text
        max_length: Maximum slug length

    Returns:
        Lowercase slug with runs of non-alphanumerics collapsed to "-", or None
    """
    raw = to_str(value)
    if not raw:
        return None
    slug = re.sub(r"[^a-z0-9]+", "-", raw.lower()).strip("-")[:max_length]
    return slug or None


def sanitize_order_number(value: Any) -> Optional[str]:
    """
    Normalize an order number to the FAS-XXXXXX format.

    Args:
        value: Candidate order number (metadata, invoice number, ...)

    Returns:
        "FAS-" plus the last six digits, or None when fewer than six digits exist
    """
    raw = to_str(value)
    if not raw:
        return None
    trimmed = raw.upper()
    if _ORDER_NUMBER_RE.match(trimmed):
        return trimmed
    digits = re.sub(r"\D", "", trimmed)
    if len(digits) >= 6:
        return f"{ORDER_NUMBER_PREFIX}-{digits[-6:]}"
    return None


def candidate_from_session_id(session_id: Any) -> Optional[str]:
    """
    Derive an order number candidate from a Stripe checkout session id.

    Args:
        session_id: Checkout session id (cs_test_... / cs_live_...)

    Returns:
        "FAS-" plus the last six digits found in the id, or None
    """
    raw = to_str(session_id)
    if not raw:
        return None
    core = _SESSION_PREFIX_RE.sub("", raw)
    digits = re.sub(r"\D", "", core)
    if len(digits) >= 6:
        return f"{ORDER_NUMBER_PREFIX}-{digits[-6:]}"
    return None


def to_str(value: Any) -> Optional[str]:
    """Trimmed string or None for blanks and non-scalar values."""
    if value is None or isinstance(value, (dict, list)):
        return None
    text = str(value).strip()
    return text or None


def to_number(value: Any) -> Optional[float]:
    """
    Lenient numeric coercion.

    Accepts ints, floats and numeric strings; rejects booleans, NaN and infinities.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            number = float(text)
        except ValueError:
            return None
    else:
        return None
    if not math.isfinite(number):
        return None
    return number


def to_int(value: Any) -> Optional[int]:
    """Rounded integer coercion built on to_number."""
    number = to_number(value)
    if number is None:
        return None
    return int(round(number))


def to_bool(value: Any) -> Optional[bool]:
    """Parse booleans from JSON values and query strings ("true", "1", "yes")."""
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("true", "1", "yes", "y", "on"):
            return True
        if lowered in ("false", "0", "no", "n", "off", ""):
            return False
    return None


def now_iso() -> str:
    """Current UTC time in ISO 8601 with milliseconds and Z suffix."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def unix_to_iso(timestamp: Any) -> Optional[str]:
    """
    Convert a Unix timestamp (seconds or milliseconds) to ISO 8601.

    Args:
        timestamp: Seconds since epoch; values above 1e10 are treated as milliseconds

    Returns:
        ISO string or None
    """
    number = to_number(timestamp)
    if number is None:
        return None
    if number > 10_000_000_000:
        number = number / 1000
    moment = datetime.fromtimestamp(number, tz=timezone.utc)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def to_unix_seconds(value: Any) -> Optional[int]:
    """
    Convert seconds, milliseconds, datetimes or ISO strings to Unix seconds.

    Args:
        value: Input timestamp in any supported form

    Returns:
        Integer seconds or None when unparseable
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        moment = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
        return int(moment.timestamp())
    number = to_number(value)
    if number is not None:
        return int(number // 1000) if number > 10_000_000_000 else int(number)
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            moment = datetime.fromisoformat(text)
        except ValueError:
            logger.debug(f"Unparseable timestamp: {value}")
            return None
        if not moment.tzinfo:
            moment = moment.replace(tzinfo=timezone.utc)
        return int(moment.timestamp())
    return None


def stable_stringify(value: Any) -> str:
    """JSON with sorted keys, used to compare documents before and after a transform."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


def safe_json_dumps(value: Any, max_length: int = 15000) -> Optional[str]:
    """
    Serialize a value for storage in a string field.

    Args:
        value: Value to serialize
        max_length: Truncate longer output with "..."

    Returns:
        Indented JSON or None for empty values
    """
    if not value:
        return None
    try:
        text = json.dumps(value, indent=2, default=str)
    except (TypeError, ValueError):
        return None
    if len(text) > max_length:
        return f"{text[: max_length - 3]}..."
    return text
