"""Request-scoped dependencies shared by the API routes."""

from __future__ import annotations

from typing import Optional

from ..services.config import AppConfig, get_config
from ..services.vault import VaultService
from ..services.vault_agent import ChatModel


def get_app_config() -> AppConfig:
    return get_config()


def get_vault_service() -> VaultService:
    return VaultService(get_config())


def get_chat_model() -> Optional[ChatModel]:
    """Model override hook; ``None`` builds a client from configuration."""
    return None


__all__ = ["get_app_config", "get_chat_model", "get_vault_service"]
