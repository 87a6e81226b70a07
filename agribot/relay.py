import asyncio
import logging

from agents import trace
from agents.tracing import generation_span

from agribot.notify import push
from agribot.providers import Provider, ProviderError, ProviderTimeout
from agribot.settings import Settings

logger = logging.getLogger("agribot.relay")

MISCONFIGURED_REPLY = "حدث خطأ داخلي: المفتاح السري لـ API مفقود."
FALLBACK_REPLY = "لم أتمكن من فهم السؤال."
GENERIC_ERROR_REPLY = "حدث خطأ أثناء الاتصال بالمساعد الزراعي."
INVALID_REQUEST_REPLY = "تعذر على المساعد الزراعي معالجة الطلب، يرجى إعادة صياغة السؤال."
AUTH_ERROR_REPLY = "هناك مشكلة في صلاحيات الوصول إلى خدمة المساعد الزراعي."
RATE_LIMIT_REPLY = "المساعد الزراعي مشغول حاليًا بسبب كثرة الطلبات، يرجى المحاولة بعد قليل."
TIMEOUT_REPLY = "انتهت مهلة الاتصال بالمساعد الزراعي، يرجى المحاولة مرة أخرى."

_STATUS_REPLIES = {
    400: INVALID_REQUEST_REPLY,
    401: AUTH_ERROR_REPLY,
    403: AUTH_ERROR_REPLY,
    429: RATE_LIMIT_REPLY,
}


class RelayError(Exception):
    """A failure the caller sees only as a fixed, user-facing reply."""

    status_code = 500

    def __init__(self, reply: str) -> None:
        super().__init__(reply)
        self.reply = reply


class MisconfiguredError(RelayError):
    def __init__(self) -> None:
        super().__init__(MISCONFIGURED_REPLY)


class DownstreamError(RelayError):
    pass


_pending_alerts: set[asyncio.Task] = set()


def _alert_finished(task: asyncio.Task) -> None:
    _pending_alerts.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Operator alert failed: %s: %s", type(exc).__name__, exc)


async def wait_for_alerts() -> None:
    """Wait for operator alerts still in flight."""
    if _pending_alerts:
        await asyncio.gather(*list(_pending_alerts), return_exceptions=True)


def error_reply(error: ProviderError) -> str:
    if isinstance(error, ProviderTimeout):
        return TIMEOUT_REPLY
    return _STATUS_REPLIES.get(error.status_code, GENERIC_ERROR_REPLY)


class Relay:
    def __init__(self, settings: Settings, provider: Provider) -> None:
        self.settings = settings
        self.provider = provider
        self.timeout = settings.request_timeout

    @property
    def configured(self) -> bool:
        return bool(self.provider.api_key)

    def ensure_configured(self) -> None:
        if not self.configured:
            logger.error("API key for provider '%s' is not configured", self.provider.name)
            raise MisconfiguredError()

    async def chat(self, message: str) -> str:
        self.ensure_configured()
        try:
            return await self._generate(message)
        except ProviderError as e:
            logger.error(
                "Provider %s failed (status=%s): %s", self.provider.name, e.status_code, e.detail
            )
            self._alert(f"WARNING: {self.provider.name} call failed (status={e.status_code}): {e.detail}")
            raise DownstreamError(error_reply(e)) from e
        except Exception as e:
            logger.exception("Unexpected error relaying message")
            self._alert(f"WARNING: Unexpected error in relay - {type(e).__name__}: {e}")
            raise DownstreamError(GENERIC_ERROR_REPLY) from e

    async def _generate(self, message: str) -> str:
        logger.info("Relaying message (%d chars) to %s", len(message), self.provider.name)
        with trace("Agriculture Chat"):
            with generation_span(
                input=[{"role": "user", "content": message}], model=self.provider.model
            ) as gen_span:
                try:
                    data = await asyncio.wait_for(self.provider.generate(message), timeout=self.timeout)
                except asyncio.TimeoutError as e:
                    raise ProviderTimeout(f"no response within {self.timeout}s") from e

                reply = self.provider.extract_reply(data)
                if reply is None:
                    logger.warning("Provider %s response had no reply text", self.provider.name)
                    reply = FALLBACK_REPLY
                gen_span.span_data.output = [{"role": "assistant", "content": reply}]
                usage = self.provider.extract_usage(data)
                if usage:
                    gen_span.span_data.usage = usage
        return reply

    def _alert(self, text: str) -> None:
        # never awaited by chat()
        task = asyncio.create_task(
            asyncio.to_thread(push, text, self.settings.pushover_token, self.settings.pushover_user)
        )
        _pending_alerts.add(task)
        task.add_done_callback(_alert_finished)
