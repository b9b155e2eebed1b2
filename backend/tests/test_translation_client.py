import io
import json
import urllib.error
import urllib.request

import pytest

from safeguard import translation_client
from safeguard.translation_client import translate_text


class _FakeResponse(io.BytesIO):
    def __enter__(self):
        return self

    def __exit__(self, *_exc):
        self.close()
        return False


@pytest.fixture(autouse=True)
def _no_sleep(monkeypatch):
    monkeypatch.setattr(translation_client.time, "sleep", lambda _s: None)


def test_empty_text_is_not_sent(monkeypatch):
    monkeypatch.setattr(urllib.request, "urlopen", lambda *_a, **_k: pytest.fail("no request expected"))
    assert translate_text("   ") == (None, "text_required")


def test_translation_result_shape(monkeypatch):
    seen = {}

    def _urlopen(req, timeout=None):
        seen["body"] = json.loads(req.data.decode("utf-8"))
        return _FakeResponse(
            json.dumps({"translatedText": "We opened two homes", "detectedLanguage": {"language": "sw", "confidence": 90}}).encode("utf-8")
        )

    monkeypatch.setattr(urllib.request, "urlopen", _urlopen)
    monkeypatch.setenv("TRANSLATE_API_KEY", "k-1")

    result, reason = translate_text("Tumefungua nyumba mbili")

    assert reason is None
    assert result == {
        "original_text": "Tumefungua nyumba mbili",
        "translated_text": "We opened two homes",
        "detected_language": "sw",
        "target_language": "en",
    }
    assert seen["body"]["source"] == "auto"
    assert seen["body"]["target"] == "en"
    assert seen["body"]["api_key"] == "k-1"


def test_missing_detected_language_defaults_to_unknown(monkeypatch):
    monkeypatch.setattr(urllib.request, "urlopen", lambda *_a, **_k: _FakeResponse(b'{"translatedText": "hola"}'))

    result, _reason = translate_text("hello", "es")

    assert result["detected_language"] == "unknown"
    assert result["target_language"] == "es"


@pytest.mark.parametrize("raw", [b"not json", b'{"error": "bad"}', b"[]"])
def test_invalid_response(monkeypatch, raw):
    monkeypatch.setattr(urllib.request, "urlopen", lambda *_a, **_k: _FakeResponse(raw))
    assert translate_text("hello") == (None, "invalid_translation_response")


def test_retries_then_reports_last_failure(monkeypatch):
    calls = []

    def _urlopen(req, timeout=None):
        calls.append(req)
        raise urllib.error.HTTPError(req.full_url, 503, "unavailable", {}, None)

    monkeypatch.setattr(urllib.request, "urlopen", _urlopen)

    assert translate_text("hello") == (None, "http_error_503")
    assert len(calls) == translation_client.TRANSLATE_RETRIES + 1


def test_network_error(monkeypatch):
    def _urlopen(req, timeout=None):
        raise urllib.error.URLError("connection refused")

    monkeypatch.setattr(urllib.request, "urlopen", _urlopen)

    assert translate_text("hello") == (None, "http_error_network")
