import logging
from typing import Any

import httpx
import openai
from openai import AsyncOpenAI

from agribot.settings import Settings

logger = logging.getLogger("agribot.providers")


class ProviderError(Exception):
    def __init__(self, detail: str, status_code: int | None = None) -> None:
        super().__init__(detail)
        self.detail = detail
        self.status_code = status_code


class ProviderTimeout(ProviderError):
    def __init__(self, detail: str = "provider call timed out") -> None:
        super().__init__(detail)


def dig(data: Any, *path: str | int) -> Any:
    """Walk ``path`` through nested dicts/lists, returning None on any miss."""
    for key in path:
        try:
            data = data[key]
        except (KeyError, IndexError, TypeError):
            return None
    return data


def _text_or_none(value: Any) -> str | None:
    if isinstance(value, str) and value:
        return value
    return None


class Provider:
    name = ""

    def __init__(self, settings: Settings, api_key: str | None, model: str) -> None:
        self.api_key = api_key
        self.model = model
        self.system_prompt = settings.system_prompt
        self.temperature = settings.temperature
        self.max_output_tokens = settings.max_output_tokens
        self.timeout = settings.request_timeout

    def build_payload(self, message: str) -> dict:
        raise NotImplementedError

    async def generate(self, message: str) -> dict:
        raise NotImplementedError

    def extract_reply(self, data: Any) -> str | None:
        raise NotImplementedError

    def extract_usage(self, data: Any) -> dict | None:
        return None

    async def aclose(self) -> None:
        pass


class OpenAIProvider(Provider):
    name = "openai"

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient | None = None) -> None:
        super().__init__(settings, settings.openai_api_key, settings.openai_model)
        self.base_url = settings.openai_base_url
        self._http_client = http_client
        self._client: AsyncOpenAI | None = None

    @property
    def client(self) -> AsyncOpenAI:
        # AsyncOpenAI refuses to build without a key, so wait until the first call
        if self._client is None:
            self._client = AsyncOpenAI(
                api_key=self.api_key,
                base_url=self.base_url,
                timeout=self.timeout,
                max_retries=0,
                http_client=self._http_client,
            )
        return self._client

    def build_payload(self, message: str) -> dict:
        return {
            "model": self.model,
            "messages": [
                {"role": "system", "content": self.system_prompt},
                {"role": "user", "content": message},
            ],
            "temperature": self.temperature,
            "max_tokens": self.max_output_tokens,
        }

    async def generate(self, message: str) -> dict:
        try:
            raw = await self.client.chat.completions.with_raw_response.create(
                **self.build_payload(message)
            )
        except openai.APITimeoutError as e:
            raise ProviderTimeout() from e
        except openai.APIStatusError as e:
            raise ProviderError(e.message, status_code=e.status_code) from e
        except openai.APIConnectionError as e:
            raise ProviderError(f"connection error: {e}") from e

        try:
            return raw.http_response.json()
        except ValueError as e:
            raise ProviderError("response body is not JSON", status_code=raw.http_response.status_code) from e

    def extract_reply(self, data: Any) -> str | None:
        return _text_or_none(dig(data, "choices", 0, "message", "content"))

    def extract_usage(self, data: Any) -> dict | None:
        usage = dig(data, "usage")
        if not isinstance(usage, dict):
            return None
        return {
            "input_tokens": usage.get("prompt_tokens"),
            "output_tokens": usage.get("completion_tokens"),
        }

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.close()


class GeminiProvider(Provider):
    name = "gemini"

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient | None = None) -> None:
        super().__init__(settings, settings.gemini_api_key, settings.gemini_model)
        self.base_url = settings.gemini_base_url.rstrip("/")
        self.client = http_client or httpx.AsyncClient(timeout=self.timeout)

    @property
    def url(self) -> str:
        return f"{self.base_url}/models/{self.model}:generateContent"

    def build_payload(self, message: str) -> dict:
        return {
            "contents": [
                {"role": "user", "parts": [{"text": f"{self.system_prompt}\n\n{message}"}]}
            ],
            "generationConfig": {
                "temperature": self.temperature,
                "maxOutputTokens": self.max_output_tokens,
            },
        }

    async def generate(self, message: str) -> dict:
        try:
            response = await self.client.post(
                self.url,
                headers={"x-goog-api-key": self.api_key},
                json=self.build_payload(message),
                timeout=self.timeout,
            )
        except httpx.TimeoutException as e:
            raise ProviderTimeout() from e
        except httpx.HTTPError as e:
            raise ProviderError(f"connection error: {e}") from e

        if response.is_error:
            raise ProviderError(response.text[:500], status_code=response.status_code)
        try:
            return response.json()
        except ValueError as e:
            raise ProviderError("response body is not JSON", status_code=response.status_code) from e

    def extract_reply(self, data: Any) -> str | None:
        return _text_or_none(dig(data, "candidates", 0, "content", "parts", 0, "text"))

    def extract_usage(self, data: Any) -> dict | None:
        usage = dig(data, "usageMetadata")
        if not isinstance(usage, dict):
            return None
        return {
            "input_tokens": usage.get("promptTokenCount"),
            "output_tokens": usage.get("candidatesTokenCount"),
        }

    async def aclose(self) -> None:
        await self.client.aclose()


PROVIDERS: dict[str, type[Provider]] = {
    OpenAIProvider.name: OpenAIProvider,
    GeminiProvider.name: GeminiProvider,
}


def build_provider(settings: Settings) -> Provider:
    provider = PROVIDERS[settings.provider](settings)
    logger.info("Relaying to %s (model %s)", provider.name, provider.model)
    return provider
