import tomllib
from pathlib import Path

import pytest

from afkcode import __version__
from afkcode.config import AfkcodeConfig, dumps_toml, load_config, save_config
from afkcode.prompts import DEFAULT_COMPLETION_TOKEN


def test_config_roundtrip(tmp_path: Path) -> None:
    config_path = tmp_path / "afkcode.toml"
    config = AfkcodeConfig.default()
    config.backends.order = ["claude", "warp"]
    config.backends.models = {"claude": "opus", "warp": "auto"}
    config.backends.squelch_seconds = 120.0
    config.loop.mode = "controller"
    config.loop.completion_token = "__DONE__"
    config.loop.sleep_seconds = 2.5
    config.loop.worker_prompt = 'Work on "{checklist}"\nthen stop.'
    config.parallel.num_instances = 4
    config.parallel.warmup_delay = 0.0
    config.leasing.items_per_instance = 3
    config.leasing.include_blocked = True
    config.verify.enabled = True
    config.verify.spiral = True
    config.verify.max_spirals = 5
    config.logging.log_file = "logs/run.log"

    save_config(config_path, config)
    loaded = load_config(config_path)

    assert loaded.backends.order == ["claude", "warp"]
    assert loaded.backends.models == {"claude": "opus", "warp": "auto"}
    assert loaded.backends.squelch_seconds == 120.0
    assert loaded.loop.mode == "controller"
    assert loaded.loop.completion_token == "__DONE__"
    assert loaded.loop.sleep_seconds == 2.5
    assert loaded.loop.worker_prompt == 'Work on "{checklist}"\nthen stop.'
    assert loaded.parallel.num_instances == 4
    assert loaded.parallel.warmup_delay == 0.0
    assert loaded.leasing.items_per_instance == 3
    assert loaded.leasing.include_blocked is True
    assert loaded.verify.enabled is True
    assert loaded.verify.spiral is True
    assert loaded.verify.max_spirals == 5
    assert loaded.logging.log_file == "logs/run.log"


def test_missing_config_file_yields_defaults(tmp_path: Path) -> None:
    loaded = load_config(tmp_path / "absent.toml")

    assert loaded.backends.order == ["gemini", "codex", "claude"]
    assert loaded.loop.completion_token == DEFAULT_COMPLETION_TOKEN
    assert loaded.loop.max_crash_retries == 1
    assert loaded.parallel.num_instances == 1


def test_partial_config_keeps_defaults_for_other_keys(tmp_path: Path) -> None:
    config_path = tmp_path / "afkcode.toml"
    config_path.write_text('[loop]\nsleep_seconds = 1\n\n[backends]\norder = ["codex"]\n')

    loaded = load_config(config_path)

    assert loaded.loop.sleep_seconds == 1
    assert loaded.loop.mode == "worker"
    assert loaded.backends.order == ["codex"]
    assert loaded.backends.timeout_seconds == 3600.0


def test_toml_dump_contains_every_section() -> None:
    rendered = dumps_toml(AfkcodeConfig.default())

    for section in ("backends", "loop", "parallel", "leasing", "verify", "logging"):
        assert f"[{section}]" in rendered
    assert "squelch_seconds" in rendered
    assert "items_per_instance" in rendered
    assert "max_spirals" in rendered
    assert "models = {}" in rendered
    tomllib.loads(rendered)


@pytest.mark.parametrize(
    ("section", "key", "value"),
    [
        ("loop", "mode", "supervisor"),
        ("loop", "completion_token", "  "),
        ("parallel", "num_instances", 0),
        ("leasing", "items_per_instance", 0),
        ("loop", "max_crash_retries", -1),
        ("verify", "max_spirals", 0),
    ],
)
def test_validate_rejects_bad_values(section: str, key: str, value: object) -> None:
    config = AfkcodeConfig.default()
    setattr(getattr(config, section), key, value)

    with pytest.raises(ValueError):
        config.validate()


def test_package_version_constant_matches_pyproject() -> None:
    project_root = Path(__file__).resolve().parents[1]
    pyproject = tomllib.loads((project_root / "pyproject.toml").read_text(encoding="utf-8"))

    assert __version__ == pyproject["project"]["version"]
