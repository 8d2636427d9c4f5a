from pathlib import Path

import pytest

from vault_agent.services import config as config_module


@pytest.fixture(autouse=True)
def restore_config_cache():
    """
    Ensure configuration cache is cleared between tests.
    """
    config_module.reload_config()
    yield
    config_module.reload_config()


def test_get_config_reads_vault_path(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("VAULT_PATH", str(tmp_path / "vault"))
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)

    cfg = config_module.reload_config()

    assert cfg.vault_path == (tmp_path / "vault").resolve()
    assert cfg.vault_path.is_dir()
    assert cfg.api_key is None


def test_blank_secrets_become_none(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("VAULT_PATH", str(tmp_path))
    monkeypatch.setenv("OPENAI_API_KEY", "   ")
    monkeypatch.setenv("RESUME_TOKEN_SECRET", "")

    cfg = config_module.reload_config()

    assert cfg.api_key is None
    assert cfg.resume_secret is None


def test_disabled_tools_never_include_protected(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("VAULT_PATH", str(tmp_path))
    monkeypatch.setenv("AGENT_DISABLED_TOOLS", "search_vault, done ,ask_user,web_search")

    cfg = config_module.reload_config()

    assert cfg.disabled_tools == ["search_vault", "web_search"]


def test_capability_flags(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("VAULT_PATH", str(tmp_path))
    monkeypatch.setenv("AGENT_CAN_DELETE", "false")
    monkeypatch.setenv("AGENT_CAN_CREATE", "0")
    monkeypatch.setenv("AGENT_WEB_ENABLED", "yes")

    cfg = config_module.reload_config()

    assert cfg.capabilities.can_add is True
    assert cfg.capabilities.can_delete is False
    assert cfg.capabilities.can_create is False
    assert cfg.web_enabled is True


def test_excluded_folders_are_normalized(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("VAULT_PATH", str(tmp_path))
    monkeypatch.setenv("EXCLUDED_FOLDERS", "/private/, Archive,,")

    cfg = config_module.reload_config()

    assert cfg.excluded_folders == ["private", "Archive"]


def test_rejects_unknown_search_provider(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("VAULT_PATH", str(tmp_path))
    monkeypatch.setenv("SEARCH_API", "altavista")

    with pytest.raises(ValueError):
        config_module.reload_config()


def test_rejects_zero_iterations(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("VAULT_PATH", str(tmp_path))
    monkeypatch.setenv("AGENT_MAX_ITERATIONS", "0")

    with pytest.raises(ValueError):
        config_module.reload_config()


def test_base_url_trailing_slash_removed(tmp_path: Path) -> None:
    cfg = config_module.AppConfig(vault_path=tmp_path, api_base_url="http://localhost:11434/v1/")

    assert cfg.api_base_url == "http://localhost:11434/v1"
