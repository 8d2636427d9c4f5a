"""Application configuration helpers."""

from __future__ import annotations

from functools import lru_cache
import os
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..models.agent import AICapabilities

PROJECT_ROOT = Path(__file__).resolve().parents[2]
DEFAULT_VAULT_PATH = PROJECT_ROOT / "data" / "vault"

# Tools that must stay available so a run can always stop or escalate.
PROTECTED_TOOL_NAMES = frozenset({"done", "ask_user"})
SEARCH_PROVIDERS = ("serper", "brave", "tavily")


def _split_csv(value: str | List[str] | None) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        items = value.split(",")
    else:
        items = list(value)
    return [item.strip() for item in items if item and item.strip()]


def _env_flag(value: Optional[str], default: bool) -> bool:
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() not in {"0", "false", "no", "off"}


class AppConfig(BaseModel):
    """Runtime configuration loaded from environment variables."""

    model_config = ConfigDict(frozen=True)

    vault_path: Path = Field(..., description="Root directory of the note vault")
    api_key: Optional[str] = Field(
        default=None, description="API key for the chat-completions endpoint"
    )
    api_base_url: str = Field(
        default="https://api.openai.com/v1",
        description="Base URL of an OpenAI-compatible chat-completions API",
    )
    model: str = Field(default="gpt-4o-mini", description="Model identifier")
    max_iterations: int = Field(default=10, ge=1, le=50)
    max_total_tokens: int = Field(default=100_000, ge=1000)
    disabled_tools: List[str] = Field(default_factory=list)
    web_enabled: bool = Field(default=False, description="Offer web_search/read_webpage")
    chat_history_length: int = Field(default=10, ge=0)
    excluded_folders: List[str] = Field(default_factory=list)
    search_api: str = Field(default="serper", description="Web search provider")
    search_api_key: Optional[str] = None
    web_snippet_limit: int = Field(default=8, ge=1, le=20)
    capabilities: AICapabilities = Field(default_factory=AICapabilities)
    request_timeout: float = Field(default=60.0, gt=0)
    resume_secret: Optional[str] = Field(
        default=None, description="HMAC key for resume tokens; a built-in key is used when unset"
    )

    @field_validator("vault_path", mode="before")
    @classmethod
    def _normalize_vault_path(cls, value: str | Path | None) -> Path:
        if value is None or value == "":
            raise ValueError("VAULT_PATH is required")
        path = value if isinstance(value, Path) else Path(value)
        return path.expanduser().resolve()

    @field_validator("api_key", "search_api_key", "resume_secret", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        cleaned = value.strip()
        return cleaned or None

    @field_validator("api_base_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        cleaned = value.strip().rstrip("/")
        if not cleaned.startswith(("http://", "https://")):
            raise ValueError("OPENAI_BASE_URL must be an http(s) URL")
        return cleaned

    @field_validator("disabled_tools", mode="before")
    @classmethod
    def _normalize_disabled_tools(cls, value: str | List[str] | None) -> List[str]:
        return [name for name in _split_csv(value) if name not in PROTECTED_TOOL_NAMES]

    @field_validator("excluded_folders", mode="before")
    @classmethod
    def _normalize_excluded_folders(cls, value: str | List[str] | None) -> List[str]:
        return [folder.strip("/") for folder in _split_csv(value) if folder.strip("/")]

    @field_validator("search_api", mode="before")
    @classmethod
    def _validate_search_api(cls, value: Optional[str]) -> str:
        provider = (value or "serper").strip().lower()
        if provider not in SEARCH_PROVIDERS:
            raise ValueError(
                f"SEARCH_API must be one of {', '.join(SEARCH_PROVIDERS)}, got '{value}'"
            )
        return provider


def _read_env(key: str, default: Optional[str] = None) -> Optional[str]:
    return os.getenv(key, default)


@lru_cache(maxsize=1)
def get_config() -> AppConfig:
    """Load and cache application configuration."""
    capabilities = AICapabilities(
        can_add=_env_flag(_read_env("AGENT_CAN_ADD"), True),
        can_delete=_env_flag(_read_env("AGENT_CAN_DELETE"), True),
        can_create=_env_flag(_read_env("AGENT_CAN_CREATE"), True),
    )

    config = AppConfig(
        vault_path=_read_env("VAULT_PATH", str(DEFAULT_VAULT_PATH)),
        api_key=_read_env("OPENAI_API_KEY"),
        api_base_url=_read_env("OPENAI_BASE_URL", "https://api.openai.com/v1"),
        model=_read_env("AGENT_MODEL", "gpt-4o-mini"),
        max_iterations=_read_env("AGENT_MAX_ITERATIONS", "10"),
        max_total_tokens=_read_env("AGENT_MAX_TOTAL_TOKENS", "100000"),
        disabled_tools=_read_env("AGENT_DISABLED_TOOLS", ""),
        web_enabled=_env_flag(_read_env("AGENT_WEB_ENABLED"), False),
        chat_history_length=_read_env("AGENT_CHAT_HISTORY_LENGTH", "10"),
        excluded_folders=_read_env("EXCLUDED_FOLDERS", ""),
        search_api=_read_env("SEARCH_API", "serper"),
        search_api_key=_read_env("SEARCH_API_KEY"),
        web_snippet_limit=_read_env("WEB_SNIPPET_LIMIT", "8"),
        capabilities=capabilities,
        request_timeout=_read_env("REQUEST_TIMEOUT", "60"),
        resume_secret=_read_env("RESUME_TOKEN_SECRET"),
    )
    # Ensure the vault directory exists for downstream services.
    config.vault_path.mkdir(parents=True, exist_ok=True)
    return config


def reload_config() -> AppConfig:
    """Clear cached config (useful for tests) and reload."""
    get_config.cache_clear()
    return get_config()


__all__ = [
    "AppConfig",
    "DEFAULT_VAULT_PATH",
    "PROJECT_ROOT",
    "PROTECTED_TOOL_NAMES",
    "SEARCH_PROVIDERS",
    "get_config",
    "reload_config",
]
