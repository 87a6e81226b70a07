import asyncio
import time
from unittest.mock import AsyncMock, patch

import pytest

from agribot.providers import GeminiProvider, OpenAIProvider, ProviderError, ProviderTimeout
from agribot.relay import (
    AUTH_ERROR_REPLY,
    FALLBACK_REPLY,
    GENERIC_ERROR_REPLY,
    INVALID_REQUEST_REPLY,
    MISCONFIGURED_REPLY,
    RATE_LIMIT_REPLY,
    TIMEOUT_REPLY,
    DownstreamError,
    MisconfiguredError,
    Relay,
    error_reply,
    wait_for_alerts,
)
from agribot.settings import Settings


def _create_relay(data=None, side_effect=None, **overrides):
    values = {"openai_api_key": "sk-test", "request_timeout": 5.0}
    values.update(overrides)
    settings = Settings(**values)
    provider = OpenAIProvider(settings)
    provider.generate = AsyncMock(return_value=data, side_effect=side_effect)
    return Relay(settings, provider)


def _chat(relay, message):
    """Run relay.chat and let any background operator alert finish."""

    async def run():
        try:
            return await relay.chat(message)
        finally:
            await wait_for_alerts()

    return asyncio.run(run())


def _completion(content):
    return {"choices": [{"message": {"role": "assistant", "content": content}}]}


# ── error_reply ───────────────────────────────────────────────

@pytest.mark.parametrize(
    "error, expected",
    [
        (ProviderError("bad", status_code=400), INVALID_REQUEST_REPLY),
        (ProviderError("unauthorized", status_code=401), AUTH_ERROR_REPLY),
        (ProviderError("forbidden", status_code=403), AUTH_ERROR_REPLY),
        (ProviderError("slow down", status_code=429), RATE_LIMIT_REPLY),
        (ProviderError("oops", status_code=500), GENERIC_ERROR_REPLY),
        (ProviderError("refused"), GENERIC_ERROR_REPLY),
        (ProviderTimeout(), TIMEOUT_REPLY),
    ],
)
def test_error_reply_maps_failure_class(error, expected):
    assert error_reply(error) == expected


# ── chat ──────────────────────────────────────────────────────

def test_chat_returns_reply_unmodified():
    relay = _create_relay(_completion("اسقِ الطماطم صباحاً كل يومين."))
    assert _chat(relay, "متى أسقي الطماطم؟") == "اسقِ الطماطم صباحاً كل يومين."


def test_chat_passes_message_to_provider():
    relay = _create_relay(_completion("ok"))
    _chat(relay, "soil question")
    relay.provider.generate.assert_awaited_once_with("soil question")


def test_chat_missing_reply_path_returns_fallback():
    relay = _create_relay({"choices": []})
    assert _chat(relay, "hi") == FALLBACK_REPLY


def test_chat_empty_reply_returns_fallback():
    relay = _create_relay(_completion(""))
    assert _chat(relay, "hi") == FALLBACK_REPLY


def test_chat_without_key_raises_misconfigured_and_skips_provider():
    relay = _create_relay(_completion("never"), openai_api_key=None)
    with pytest.raises(MisconfiguredError) as exc_info:
        _chat(relay, "hi")
    assert exc_info.value.reply == MISCONFIGURED_REPLY
    assert exc_info.value.status_code == 500
    relay.provider.generate.assert_not_awaited()


def test_configured_follows_selected_provider_key():
    settings = Settings(provider="gemini", openai_api_key="sk-test")
    relay = Relay(settings, GeminiProvider(settings))
    assert relay.configured is False


@pytest.mark.parametrize(
    "status, expected",
    [(400, INVALID_REQUEST_REPLY), (403, AUTH_ERROR_REPLY), (429, RATE_LIMIT_REPLY), (502, GENERIC_ERROR_REPLY)],
)
def test_chat_provider_error_becomes_downstream_error(status, expected):
    relay = _create_relay(side_effect=ProviderError("raw provider body", status_code=status))
    with patch("agribot.relay.push"):
        with pytest.raises(DownstreamError) as exc_info:
            _chat(relay, "hi")
    assert exc_info.value.reply == expected
    assert exc_info.value.status_code == 500
    assert "raw provider body" not in exc_info.value.reply


def test_chat_provider_error_alerts_operator_with_detail():
    relay = _create_relay(
        side_effect=ProviderError("quota exceeded", status_code=429),
        pushover_token="tok",
        pushover_user="usr",
    )
    with patch("agribot.relay.push") as mock_push:
        with pytest.raises(DownstreamError):
            _chat(relay, "hi")
    mock_push.assert_called_once()
    text, token, user = mock_push.call_args[0]
    assert "quota exceeded" in text
    assert "429" in text
    assert (token, user) == ("tok", "usr")


def test_chat_unexpected_exception_becomes_generic_reply():
    relay = _create_relay(side_effect=ValueError("boom"))
    with patch("agribot.relay.push") as mock_push:
        with pytest.raises(DownstreamError) as exc_info:
            _chat(relay, "hi")
    assert exc_info.value.reply == GENERIC_ERROR_REPLY
    assert "ValueError" in mock_push.call_args[0][0]


def test_chat_provider_timeout_maps_to_timeout_reply():
    relay = _create_relay(side_effect=ProviderTimeout())
    with patch("agribot.relay.push"):
        with pytest.raises(DownstreamError) as exc_info:
            _chat(relay, "hi")
    assert exc_info.value.reply == TIMEOUT_REPLY


def test_chat_slow_provider_is_cut_off_at_timeout():
    relay = _create_relay(request_timeout=0.1)

    async def hang(message):
        await asyncio.sleep(10)

    relay.provider.generate = hang
    start = time.monotonic()
    with patch("agribot.relay.push"):
        with pytest.raises(DownstreamError) as exc_info:
            _chat(relay, "hi")
    elapsed = time.monotonic() - start

    assert exc_info.value.reply == TIMEOUT_REPLY
    assert elapsed < 2


def test_chat_slow_alert_does_not_delay_reply():
    relay = _create_relay(
        side_effect=ProviderTimeout(),
        request_timeout=0.1,
        pushover_token="tok",
        pushover_user="usr",
    )

    def slow_post(*args, **kwargs):
        time.sleep(3)

    async def timed_chat():
        start = time.monotonic()
        try:
            await relay.chat("hi")
        except DownstreamError as e:
            return e, time.monotonic() - start
        finally:
            await wait_for_alerts()

    with patch("agribot.notify.requests.post", side_effect=slow_post) as mock_post:
        error, elapsed = asyncio.run(timed_chat())

    assert error.reply == TIMEOUT_REPLY
    assert elapsed < 1
    mock_post.assert_called_once()


def test_chat_failing_alert_keeps_mapped_reply(caplog):
    relay = _create_relay(side_effect=ProviderError("quota", status_code=429))
    with patch("agribot.relay.push", side_effect=RuntimeError("alert broke")):
        with pytest.raises(DownstreamError) as exc_info:
            _chat(relay, "hi")
    assert exc_info.value.reply == RATE_LIMIT_REPLY
    assert "Operator alert failed" in caplog.text
