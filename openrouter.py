"""
OpenRouter client used by the analytics pages.

The API key and the chosen model are stored in the settings table.
"""
import json
import logging
import re
from collections import Counter

import requests

logger = logging.getLogger(__name__)

API_BASE = "https://openrouter.ai/api/v1"
REQUEST_TIMEOUT = 30
TOP_VALUES = 10

SETTINGS_KEYS = {
    "OPENROUTER_API_KEY": "openrouter_api_key",
    "ANALYTICS_AI_MODEL": "analytics_ai_model",
}


class AnalyticsError(Exception):
    pass


def _headers(api_key):
    return {
        "Authorization": f"Bearer {api_key}",
        "Content-Type": "application/json",
    }


def _price(value) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def get_available_models(api_key):
    """Models offered by OpenRouter; empty on any failure."""
    if not api_key:
        return []
    try:
        resp = requests.get(f"{API_BASE}/models", headers=_headers(api_key), timeout=REQUEST_TIMEOUT)
        resp.raise_for_status()
        data = resp.json().get("data", [])
    except (requests.RequestException, ValueError) as e:
        logger.error(f"Failed to fetch OpenRouter models: {e}")
        return []
    models = []
    for raw in data:
        pricing = raw.get("pricing") or {}
        models.append({
            "id": raw.get("id"),
            "name": raw.get("name") or raw.get("id"),
            "context_length": raw.get("context_length"),
            "pricing": {
                "prompt": _price(pricing.get("prompt")),
                "completion": _price(pricing.get("completion")),
            },
        })
    return models


def sort_models(models, sort_by="price"):
    if sort_by == "name":
        return sorted(models, key=lambda m: (m["name"] or "").lower())
    return sorted(models, key=lambda m: m["pricing"]["prompt"])


def format_price(price) -> str:
    if price == 0:
        return "Free"
    if price < 0.01:
        return f"${price:.4f}"
    return f"${price:.2f}"


def mask_api_key(api_key) -> str:
    return "••••••••" if api_key else ""


def count_values(values, limit=TOP_VALUES):
    """Most frequent values as chart rows; blanks count as "(empty)"."""
    counts = Counter((str(v).strip() if v is not None else "") or "(empty)" for v in values)
    return [{"name": name, "value": count} for name, count in counts.most_common(limit)]


_JSON_RE = re.compile(r"\{.*\}", re.DOTALL)


def analyze_word_counts(api_key, model, texts):
    """
    Ask the model to normalize free-text answers and count them.

    Returns:
        list of {"name", "value"} sorted by value, at most TOP_VALUES rows.

    Raises:
        AnalyticsError: when not configured or the response is unusable.
    """
    if not api_key:
        raise AnalyticsError("OpenRouter API key not configured")
    if not model:
        raise AnalyticsError("Analytics AI model not selected")
    texts = [t for t in texts if t and str(t).strip()]
    if not texts:
        return []

    prompt = (
        "Group the following answers by meaning and count how many times each "
        "topic appears. Reply with JSON only, in the form "
        '{"counts": {"topic": number}}.\n\n'
        + "\n".join(f"- {t}" for t in texts)
    )
    try:
        resp = requests.post(
            f"{API_BASE}/chat/completions",
            headers=_headers(api_key),
            json={"model": model, "messages": [{"role": "user", "content": prompt}]},
            timeout=REQUEST_TIMEOUT,
        )
        resp.raise_for_status()
        content = resp.json()["choices"][0]["message"]["content"]
    except requests.RequestException as e:
        logger.error(f"OpenRouter request failed: {e}")
        raise AnalyticsError("AI analysis request failed") from e
    except (KeyError, IndexError, ValueError) as e:
        logger.error(f"Unexpected OpenRouter response: {e}")
        raise AnalyticsError("Unexpected AI response") from e

    match = _JSON_RE.search(content or "")
    try:
        counts = json.loads(match.group(0))["counts"] if match else None
    except (ValueError, KeyError) as e:
        raise AnalyticsError("AI response was not valid JSON") from e
    if not isinstance(counts, dict):
        raise AnalyticsError("AI response was not valid JSON")

    rows = []
    for name, value in counts.items():
        try:
            rows.append({"name": str(name), "value": int(value)})
        except (TypeError, ValueError):
            logger.warning(f"Ignoring non-numeric count for {name!r}")
    rows.sort(key=lambda r: r["value"], reverse=True)
    return rows[:TOP_VALUES]
