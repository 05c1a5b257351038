"""
Unit tests for the controller entrypoint's option handling.
"""

import pytest

from pool_controller.__main__ import build_config, get_database_path, parse_args

ENV_VARS = [
    "POOL_DB_PATH",
    "POOL_MIN_SIZE",
    "POOL_TARGET_SIZE",
    "POOL_MAX_SIZE",
    "POOL_BASE_IMAGE",
    "POOL_CONTAINER_PREFIX",
    "POOL_MONITOR_INTERVAL",
    "POOL_SCALING_INTERVAL",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def test_defaults():
    config = build_config(parse_args([]))
    assert (config.size.min_size, config.size.target_size, config.size.max_size) == (3, 8, 20)
    assert get_database_path(parse_args([])) == "ci_pool.db"


def test_cli_overrides_environment(monkeypatch):
    monkeypatch.setenv("POOL_MAX_SIZE", "50")
    monkeypatch.setenv("POOL_BASE_IMAGE", "debian:12")
    monkeypatch.setenv("POOL_DB_PATH", "/var/lib/pool.db")

    args = parse_args(["--max-size", "10", "--db-path", "/tmp/p.db"])
    config = build_config(args)

    assert config.size.max_size == 10
    assert config.template.base_image == "debian:12"
    assert get_database_path(args) == "/tmp/p.db"


def test_invalid_environment_values_fall_back(monkeypatch):
    monkeypatch.setenv("POOL_TARGET_SIZE", "lots")
    monkeypatch.setenv("POOL_SCALING_INTERVAL", "-5")

    config = build_config(parse_args([]))

    assert config.size.target_size == 8
    assert config.scaling.evaluation_interval == 30.0


def test_zero_min_size_allowed(monkeypatch):
    monkeypatch.setenv("POOL_MIN_SIZE", "0")
    config = build_config(parse_args(["--target-size", "1", "--max-size", "4"]))
    assert config.size.min_size == 0


def test_target_clamped_into_bounds():
    config = build_config(parse_args(["--min-size", "2", "--target-size", "30", "--max-size", "6"]))
    assert config.size.target_size == 6


def test_inconsistent_bounds_rejected():
    with pytest.raises(ValueError):
        build_config(parse_args(["--min-size", "10", "--max-size", "4"]))
