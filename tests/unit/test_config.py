"""Tests for configuration loading."""

from crewflow.config import load_config
from crewflow.persistence import InMemoryRunLog, SQLiteRunLog, get_run_log


def test_load_config_from_env(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
engine:
  snapshot_limit: 10
  approval_timeout: 30
  default_recovery: retry
ollama:
  url: http://ollama:11434
  model: mistral
  temperature: 0.2
"""
    )
    monkeypatch.setenv("CREWFLOW_CONFIG", str(config_path))
    monkeypatch.delenv("CREWFLOW_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)

    config = load_config()
    assert config.engine.snapshot_limit == 10
    assert config.engine.approval_timeout == 30
    assert config.engine.default_recovery == "retry"
    assert config.ollama.url == "http://ollama:11434"
    assert config.ollama.model == "mistral"
    assert config.ollama.temperature == 0.2
    assert config.database_url is None


def test_missing_config_file_uses_defaults(tmp_path, monkeypatch):
    monkeypatch.delenv("CREWFLOW_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)

    config = load_config(str(tmp_path / "missing.yaml"))
    assert config.engine.snapshot_limit == 50
    assert config.engine.default_recovery is None
    assert config.ollama.url == "http://localhost:11434"


def test_database_url_env_override(tmp_path, monkeypatch):
    monkeypatch.setenv("CREWFLOW_DATABASE_URL", f"sqlite://{tmp_path / 'runs.db'}")

    config = load_config(str(tmp_path / "missing.yaml"))
    assert config.database_url.startswith("sqlite://")
    assert isinstance(get_run_log(config=config), SQLiteRunLog)


def test_get_run_log_defaults_to_memory(monkeypatch):
    monkeypatch.delenv("CREWFLOW_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)

    first = get_run_log()
    assert isinstance(first, InMemoryRunLog)
    assert get_run_log() is not first
