import os
from functools import lru_cache
from typing import Literal, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

DEFAULT_SYSTEM_PROMPT = (
    "أنت مساعد ذكي متخصص في الزراعة والبستنة والعناية بالنباتات. "
    "أجب فقط عن الأسئلة المتعلقة بالري، التربة، التسميد، الأمراض الزراعية ومواسم الزراعة. "
    "كن موجزًا وعمليًا."
)


class Settings(BaseModel):
    """Runtime configuration resolved from environment variables."""

    provider: Literal["openai", "gemini"] = Field(
        default="openai", alias="LLM_PROVIDER", description="Generation provider to relay to"
    )
    openai_api_key: Optional[str] = Field(default=None, alias="OPENAI_API_KEY")
    openai_model: str = Field(default="gpt-4o-mini", alias="OPENAI_MODEL")
    openai_base_url: str = Field(default="https://api.openai.com/v1", alias="OPENAI_BASE_URL")
    gemini_api_key: Optional[str] = Field(default=None, alias="GEMINI_API_KEY")
    gemini_model: str = Field(default="gemini-2.5-flash", alias="GEMINI_MODEL")
    gemini_base_url: str = Field(
        default="https://generativelanguage.googleapis.com/v1beta", alias="GEMINI_BASE_URL"
    )
    system_prompt: str = Field(default=DEFAULT_SYSTEM_PROMPT, alias="SYSTEM_PROMPT")
    temperature: float = Field(default=0.5, alias="LLM_TEMPERATURE")
    max_output_tokens: int = Field(default=800, alias="LLM_MAX_TOKENS")
    request_timeout: float = Field(
        default=15.0,
        alias="LLM_TIMEOUT_SECONDS",
        description="Upper bound on a single provider round trip.",
    )
    max_body_bytes: int = Field(default=1024 * 1024, alias="MAX_BODY_BYTES")
    cors_origins: str = Field(
        default="*", alias="CORS_ORIGINS", description="Comma-separated list of allowed origins."
    )
    tracing_enabled: bool = Field(default=True, alias="TRACING_ENABLED")
    pushover_token: Optional[str] = Field(default=None, alias="PUSHOVER_TOKEN")
    pushover_user: Optional[str] = Field(default=None, alias="PUSHOVER_USER")
    port: int = Field(default=8000, alias="PORT")

    model_config = {"populate_by_name": True}

    @property
    def api_key(self) -> str | None:
        key = self.openai_api_key if self.provider == "openai" else self.gemini_api_key
        return key or None

    @property
    def allowed_origins(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    @classmethod
    def from_env(cls) -> "Settings":
        return cls.model_validate(os.environ)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached Settings instance built from the environment (and .env)."""
    load_dotenv(override=True)
    return Settings.from_env()
