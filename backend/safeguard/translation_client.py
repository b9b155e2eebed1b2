import json
import logging
import os
import time
import urllib.error
import urllib.request
from typing import Dict, Optional, Tuple


TRANSLATE_API_URL = os.getenv("TRANSLATE_API_URL", "https://libretranslate.de/translate")
TRANSLATE_TIMEOUT_SEC = int(os.getenv("TRANSLATE_TIMEOUT_SEC", "20"))
TRANSLATE_RETRIES = max(0, int(os.getenv("TRANSLATE_RETRIES", "2")))
TRANSLATE_RETRY_BACKOFF_SEC = max(0.1, float(os.getenv("TRANSLATE_RETRY_BACKOFF_SEC", "1.2")))

logger = logging.getLogger(__name__)


def translate_text(text: str, target_language: str = "en") -> Tuple[Optional[Dict], Optional[str]]:
    """Send ``text`` to the translation service; returns (result, failure_reason)."""
    text = str(text or "")
    if not text.strip():
        return None, "text_required"
    target = str(target_language or "en").strip() or "en"

    payload = {"q": text, "source": "auto", "target": target, "format": "text"}
    headers = {"Content-Type": "application/json"}
    api_key = str(os.getenv("TRANSLATE_API_KEY", "")).strip()
    if api_key:
        payload["api_key"] = api_key

    raw = ""
    last_reason = None
    for attempt in range(TRANSLATE_RETRIES + 1):
        req = urllib.request.Request(
            TRANSLATE_API_URL,
            data=json.dumps(payload).encode("utf-8"),
            headers=headers,
            method="POST",
        )
        try:
            with urllib.request.urlopen(req, timeout=TRANSLATE_TIMEOUT_SEC) as res:
                raw = res.read().decode("utf-8", errors="ignore")
            last_reason = None
            break
        except urllib.error.HTTPError as exc:
            last_reason = f"http_error_{exc.code}"
            if exc.code in {429, 500, 502, 503, 504} and attempt < TRANSLATE_RETRIES:
                time.sleep(TRANSLATE_RETRY_BACKOFF_SEC * (2 ** attempt))
                continue
            break
        except TimeoutError:
            last_reason = "timeout"
        except (urllib.error.URLError, ValueError):
            last_reason = "http_error_network"
        if attempt < TRANSLATE_RETRIES:
            time.sleep(TRANSLATE_RETRY_BACKOFF_SEC * (2 ** attempt))
    if last_reason:
        logger.warning("Translation request failed: %s", last_reason)
        return None, last_reason

    try:
        parsed = json.loads(raw)
    except ValueError:
        return None, "invalid_translation_response"
    translated = (parsed or {}).get("translatedText") if isinstance(parsed, dict) else None
    if not isinstance(translated, str):
        return None, "invalid_translation_response"
    detected = parsed.get("detectedLanguage") or {}
    return {
        "original_text": text,
        "translated_text": translated,
        "detected_language": (detected.get("language") if isinstance(detected, dict) else None) or "unknown",
        "target_language": target,
    }, None
