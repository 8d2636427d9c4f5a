"""Service layer: edit interpreter, vault store, tool dispatch and the agent loop."""

from .capabilities import NOT_SUPPORTED, LocalVaultCapabilities, VaultCapabilities
from .config import AppConfig, get_config, reload_config
from .diff import compute_diff
from .edit_interpreter import EditOutcome, apply_edit
from .model_client import ModelClient, ModelResponse, ModelTransportError
from .prompt_loader import PromptLoader, PromptLoaderError
from .resume import ResumeCodec, ResumeTokenError
from .tool_executor import ToolExecutor, ToolOutcome
from .tool_registry import ToolName, ToolRegistry, get_tool_registry
from .vault import VaultService, sanitize_path, validate_note_path
from .vault_agent import VaultAgent, VaultAgentError, build_agent
from .web_search import WebSearchClient, WebSearchError

__all__ = [
    "AppConfig",
    "get_config",
    "reload_config",
    "EditOutcome",
    "apply_edit",
    "compute_diff",
    "VaultService",
    "sanitize_path",
    "validate_note_path",
    "NOT_SUPPORTED",
    "VaultCapabilities",
    "LocalVaultCapabilities",
    "WebSearchClient",
    "WebSearchError",
    "ToolName",
    "ToolRegistry",
    "get_tool_registry",
    "ToolExecutor",
    "ToolOutcome",
    "ModelClient",
    "ModelResponse",
    "ModelTransportError",
    "PromptLoader",
    "PromptLoaderError",
    "ResumeCodec",
    "ResumeTokenError",
    "VaultAgent",
    "VaultAgentError",
    "build_agent",
]
