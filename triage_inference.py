import logging
import os
import threading
from collections import OrderedDict

from google import genai
from google.genai import types

from models import EmergencyType, Severity


logger = logging.getLogger(__name__)

GEMINI_MODEL = os.environ.get("GEMINI_MODEL", "gemini-1.5-flash")
GEMINI_TIMEOUT = float(os.environ.get("GEMINI_TIMEOUT", 4))
TRIAGE_CACHE_SIZE = int(os.environ.get("TRIAGE_CACHE_SIZE", 256))

_ALLOWED_TYPES = {emergency_type.value for emergency_type in EmergencyType}
_ALLOWED_SEVERITIES = {severity.value for severity in Severity}

_triage_cache = OrderedDict()
_cache_lock = threading.Lock()


def _get_client():
    api_key = os.environ.get("GEMINI_API_KEY")
    if not api_key:
        return None
    # HttpOptions.timeout is in milliseconds.
    return genai.Client(
        api_key=api_key,
        http_options=types.HttpOptions(timeout=int(GEMINI_TIMEOUT * 1000)),
    )


def _cache_get(key):
    with _cache_lock:
        if key not in _triage_cache:
            return None
        _triage_cache.move_to_end(key)
        return _triage_cache[key]


def _cache_put(key, value):
    with _cache_lock:
        _triage_cache[key] = value
        _triage_cache.move_to_end(key)
        while len(_triage_cache) > TRIAGE_CACHE_SIZE:
            _triage_cache.popitem(last=False)


def _normalize_type(value):
    normalized = str(value or "").strip().lower().replace("-", "_").replace(" ", "_")
    aliases = {
        "heart_attack": "cardiac",
        "cardiac_arrest": "cardiac",
        "burn": "burns",
        "overdose": "poisoning",
        "breathing": "respiratory",
        "labor": "childbirth",
        "labour": "childbirth",
        "neuro": "neurological",
        "seizure": "neurological",
        "injury": "trauma",
    }
    normalized = aliases.get(normalized, normalized)
    if normalized not in _ALLOWED_TYPES:
        return EmergencyType.OTHER
    return EmergencyType(normalized)


def _normalize_severity(value, default=Severity.URGENT):
    normalized = str(value or "").strip().lower()
    if normalized not in _ALLOWED_SEVERITIES:
        return default
    return Severity(normalized)


def infer_emergency_type(description):
    """Classify a free-text description into one emergency type; "other" when unsure."""
    cache_key = (description or "").strip().lower()
    if not cache_key:
        return EmergencyType.OTHER

    cached = _cache_get(cache_key)
    if cached is not None:
        return cached

    prompt = f"""
Classify the medical emergency into exactly one type from this strict list:
{chr(10).join(f"- {value}" for value in sorted(_ALLOWED_TYPES))}

Emergency description: {description}

Return ONLY one word from the list.
"""

    client = _get_client()
    if client is None:
        logger.debug("GEMINI_API_KEY not configured, defaulting emergency type to other")
        return EmergencyType.OTHER
    try:
        response = client.models.generate_content(
            model=GEMINI_MODEL,
            contents=prompt,
            config={"temperature": 0.1},
        )
        emergency_type = _normalize_type((response.text or "").strip())
    except Exception:
        logger.warning("Emergency type inference failed, defaulting to other", exc_info=True)
        return EmergencyType.OTHER

    _cache_put(cache_key, emergency_type)
    return emergency_type


def infer_severity(description, default=Severity.URGENT):
    cache_key = ("severity", (description or "").strip().lower())
    if not cache_key[1]:
        return default

    cached = _cache_get(cache_key)
    if cached is not None:
        return cached

    prompt = f"""
Rate how severe this medical emergency is using exactly one word:
- critical (life-threatening, needs intervention within minutes)
- urgent (serious, needs care soon)
- moderate (stable, needs care but not immediately)

Emergency description: {description}

Return ONLY one word from the list.
"""

    client = _get_client()
    if client is None:
        return default
    try:
        response = client.models.generate_content(
            model=GEMINI_MODEL,
            contents=prompt,
            config={"temperature": 0.1},
        )
        severity = _normalize_severity((response.text or "").strip(), default)
    except Exception:
        logger.warning("Severity inference failed, defaulting to %s", default.value, exc_info=True)
        return default

    _cache_put(cache_key, severity)
    return severity
