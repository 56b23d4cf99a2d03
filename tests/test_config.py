from __future__ import annotations

import pytest

from polyrun.config import Config


def test_defaults(monkeypatch):
    for name in ("POLYRUN_ALLOWED_LANGS", "POLYRUN_SCREENED_LANGS", "POLYRUN_ADMISSION", "POLYRUN_MAX_WORKERS"):
        monkeypatch.delenv(name, raising=False)
    config = Config.from_env()
    assert config.allowed_langs is None
    assert config.screened_langs == ["javascript"]
    assert config.admission == "queue"
    assert config.max_workers == 4


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("POLYRUN_ALLOWED_LANGS", "Python, c ,")
    monkeypatch.setenv("POLYRUN_SCREENED_LANGS", "")
    monkeypatch.setenv("POLYRUN_ADMISSION", "REJECT")
    monkeypatch.setenv("POLYRUN_MAX_WORKERS", "2")
    monkeypatch.setenv("POLYRUN_MAX_MEMORY_MB", "64")
    monkeypatch.setenv("POLYRUN_LOG_LEVEL", "debug")
    config = Config.from_env()
    assert config.allowed_langs == ["python", "c"]
    assert config.screened_langs == []
    assert config.admission == "reject"
    assert config.max_workers == 2
    assert config.max_memory_mb == 64
    assert config.log_level == "DEBUG"


def test_invalid_integer(monkeypatch):
    monkeypatch.setenv("POLYRUN_MAX_QUEUE", "many")
    with pytest.raises(ValueError, match="POLYRUN_MAX_QUEUE"):
        Config.from_env()


@pytest.mark.parametrize(
    "overrides",
    [
        {"admission": "drop"},
        {"isolation": "docker"},
        {"isolation": "unshare"},
        {"max_workers": 0},
        {"max_queue": -1},
    ],
)
def test_invalid_values(overrides):
    with pytest.raises(ValueError):
        Config(**overrides)
