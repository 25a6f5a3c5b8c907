from __future__ import annotations

from pathlib import Path

import pytest

from llm_balancer.config import (
    BackendConfig,
    BalancerConfig,
    ConfigLoadError,
    NoBackendsConfiguredError,
    SelectionMode,
    load_balancer_config,
    parse_duration_seconds,
)
from tests.client_test_utils import write_balancer_config

_BACKEND = {"name": "a", "url": "http://a.test/v1", "models": ["m1"]}


def test_defaults_apply_when_fields_absent(tmp_path: Path) -> None:
    path = write_balancer_config(tmp_path / "config.yaml", {"backends": [_BACKEND]})

    config = load_balancer_config(path)

    assert config.server.port == 8080
    assert config.timeout == 180.0
    assert config.retry == 3
    assert config.mode == "random"
    assert config.selection_mode == SelectionMode.WEIGHTED_RANDOM


def test_zero_values_fall_back_to_defaults() -> None:
    config = BalancerConfig.model_validate(
        {"server": {"port": 0}, "timeout": 0, "retry": 0, "mode": "", "backends": [_BACKEND]}
    )

    assert config.server.port == 8080
    assert config.timeout == 180.0
    assert config.retry == 3
    assert config.mode == "random"


def test_round_robin_mode_is_recognized(tmp_path: Path) -> None:
    path = write_balancer_config(
        tmp_path / "config.yaml",
        {"mode": "round-robin", "retry": 5, "timeout": "90s", "backends": [_BACKEND]},
    )

    config = load_balancer_config(path)

    assert config.selection_mode == SelectionMode.ROUND_ROBIN
    assert config.retry == 5
    assert config.timeout == 90.0


@pytest.mark.parametrize("mode", ["Round-Robin", "round-robin ", "roundrobin", "weighted"])
def test_mode_other_than_exact_round_robin_is_weighted_random(mode: str) -> None:
    config = BalancerConfig.model_validate({"mode": mode, "backends": [_BACKEND]})

    assert config.mode == mode
    assert config.selection_mode == SelectionMode.WEIGHTED_RANDOM


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        (45, 45.0),
        (2.5, 2.5),
        ("30", 30.0),
        ("90s", 90.0),
        ("3m", 180.0),
        ("1m30s", 90.0),
        ("500ms", 0.5),
        ("1h", 3600.0),
    ],
)
def test_parse_duration_seconds(value: object, expected: float) -> None:
    assert parse_duration_seconds(value) == expected


@pytest.mark.parametrize("value", ["soon", "10x", "s10", True])
def test_parse_duration_seconds_rejects_garbage(value: object) -> None:
    with pytest.raises(ValueError):
        parse_duration_seconds(value)


def test_invalid_timeout_is_a_config_error(tmp_path: Path) -> None:
    path = write_balancer_config(
        tmp_path / "config.yaml", {"timeout": "soon", "backends": [_BACKEND]}
    )

    with pytest.raises(ConfigLoadError, match="Invalid balancer config"):
        load_balancer_config(path)


def test_negative_retry_is_rejected() -> None:
    with pytest.raises(ValueError):
        BalancerConfig.model_validate({"retry": -1, "backends": [_BACKEND]})


def test_missing_file_raises_config_error(tmp_path: Path) -> None:
    with pytest.raises(ConfigLoadError, match="not found"):
        load_balancer_config(tmp_path / "missing.yaml")


def test_non_mapping_yaml_raises_config_error(tmp_path: Path) -> None:
    path = tmp_path / "config.yaml"
    path.write_text("- just\n- a list\n", encoding="utf-8")

    with pytest.raises(ConfigLoadError, match="Expected YAML object"):
        load_balancer_config(path)


def test_empty_backend_list_is_fatal(tmp_path: Path) -> None:
    path = write_balancer_config(tmp_path / "config.yaml", {"retry": 2, "backends": []})

    with pytest.raises(NoBackendsConfiguredError):
        load_balancer_config(path)


def test_duplicate_backend_names_are_rejected(tmp_path: Path) -> None:
    path = write_balancer_config(
        tmp_path / "config.yaml", {"backends": [_BACKEND, dict(_BACKEND)]}
    )

    with pytest.raises(ConfigLoadError, match="Duplicate backend name"):
        load_balancer_config(path)


def test_backend_helpers() -> None:
    backend = BackendConfig(
        name="a", url="https://api.test/v1/", weight=-2, models=["m1", "m2"]
    )

    assert backend.effective_weight == 1
    assert backend.chat_completions_url == "https://api.test/v1/chat/completions"
    assert backend.resolved_default_model() == "m1"
    assert BackendConfig(name="b", url="http://b").resolved_default_model() == ""
    assert (
        BackendConfig(name="c", url="http://c", default_model="d", models=["m"])
        .resolved_default_model()
        == "d"
    )


def test_api_key_env_overrides_inline_key(monkeypatch: pytest.MonkeyPatch) -> None:
    backend = BackendConfig(
        name="a", url="http://a", api_key="inline", api_key_env="BACKEND_A_KEY"
    )

    assert backend.resolved_api_key() == "inline"
    monkeypatch.setenv("BACKEND_A_KEY", "from-env")
    assert backend.resolved_api_key() == "from-env"
