from __future__ import annotations

from pathlib import Path

import pytest

from dealflow.config.settings import Settings
from dealflow.container import build_runtime
from dealflow.utils.error_taxonomy import ConfigurationError


def _set_credentials(monkeypatch, *, webhook_url: str) -> None:
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    monkeypatch.setenv("MISTRAL_API_KEY", "mistral-test")
    monkeypatch.setenv("LINKUP_API_KEY", "linkup-test")
    monkeypatch.setenv("ALERT_WEBHOOK_URL", webhook_url)
    for name in (
        "DEALFLOW_OPENAI_API_KEY",
        "DEALFLOW_MISTRAL_API_KEY",
        "DEALFLOW_LINKUP_API_KEY",
        "DEALFLOW_ALERT_WEBHOOK_URL",
    ):
        monkeypatch.delenv(name, raising=False)


def test_build_runtime_requires_alert_destination(monkeypatch, tmp_path: Path) -> None:
    _set_credentials(monkeypatch, webhook_url="")
    settings = Settings(_env_file=None, sqlite_path=tmp_path / "dealflow.sqlite3")

    with pytest.raises(ConfigurationError, match="ALERT_WEBHOOK_URL"):
        build_runtime(settings)


def test_build_runtime_wires_orchestrator(monkeypatch, tmp_path: Path) -> None:
    _set_credentials(monkeypatch, webhook_url="https://alerts.test/hook")
    settings = Settings(
        _env_file=None,
        sqlite_path=tmp_path / "dealflow.sqlite3",
        max_iterations=7,
    )

    runtime = build_runtime(settings)

    assert runtime.repo.db_path == tmp_path / "dealflow.sqlite3"
    assert runtime.orchestrator.config.conversation.max_iterations == 7
    assert runtime.orchestrator.quick_context_extractor is not None
    assert runtime.orchestrator.emitter_factory().max_buffered_events == 1_000
