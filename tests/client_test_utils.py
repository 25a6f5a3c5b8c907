from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from fastapi.testclient import TestClient

from llm_balancer.main import app
from llm_balancer.settings import get_settings


def write_balancer_config(path: Path, payload: dict[str, Any]) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(payload, handle, sort_keys=False)
    return path


def build_test_client(monkeypatch: Any, config_path: Path, **env: Any) -> TestClient:
    monkeypatch.setenv("BALANCER_CONFIG_PATH", str(config_path))
    for key, value in env.items():
        monkeypatch.setenv(key, str(value))
    get_settings.cache_clear()
    return TestClient(app)
