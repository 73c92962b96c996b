from pathlib import Path

import pytest
from pydantic import ValidationError

import skipper.config as config_module
from skipper.config import CompactionConfig, Config


def test_defaults_match_documented_values(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", tmp_path / "missing.yaml")

    cfg = Config.load()

    assert cfg.agent.max_iterations == 200
    assert cfg.agent.loop_detection_window == 5
    assert cfg.permissions.default_mode == "ask"
    assert cfg.compaction.token_threshold == 0.8
    assert cfg.compaction.inception_count == 4
    assert cfg.compaction.working_window_count == 10
    assert cfg.compaction.summary_max_tokens == 2000
    assert cfg.compaction.message_threshold is None


def test_load_prefers_local_config_yaml(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)

    home_cfg = tmp_path / "home_config.yaml"
    home_cfg.write_text("model:\n  model: home-model\n", encoding="utf-8")
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", home_cfg)

    local_cfg = tmp_path / "config.yaml"
    local_cfg.write_text(
        (
            "model:\n"
            "  model: qwen2.5-coder\n"
            "permissions:\n"
            "  default_mode: deny\n"
            "  always_allow:\n"
            "    - read\n"
            "    - glob\n"
        ),
        encoding="utf-8",
    )

    cfg = Config.load()

    assert cfg.model.model == "qwen2.5-coder"
    assert cfg.permissions.default_mode == "deny"
    assert cfg.permissions.always_allow == ["read", "glob"]


def test_load_falls_back_to_default_path_when_no_local(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)

    home_cfg = tmp_path / "home_config.yaml"
    home_cfg.write_text("compaction:\n  working_window_count: 6\n", encoding="utf-8")
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", home_cfg)

    cfg = Config.load()

    assert cfg.compaction.working_window_count == 6
    assert cfg.compaction.inception_count == 4


def test_env_overrides_nested_values(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", tmp_path / "missing.yaml")
    monkeypatch.setenv("SKIPPER_COMPACTION__INCEPTION_COUNT", "2")
    monkeypatch.setenv("SKIPPER_AGENT__MAX_ITERATIONS", "12")

    cfg = Config.load()

    assert cfg.compaction.inception_count == 2
    assert cfg.agent.max_iterations == 12


@pytest.mark.parametrize("threshold", [0, -0.1, 1.5])
def test_token_threshold_must_be_a_fraction(threshold):
    with pytest.raises(ValidationError):
        CompactionConfig(token_threshold=threshold)


def test_negative_window_rejected():
    with pytest.raises(ValidationError):
        CompactionConfig(working_window_count=-1)


def test_save_then_load_round_trip(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)
    path = tmp_path / "saved" / "config.yaml"

    cfg = Config()
    cfg.compaction.message_threshold = 40
    cfg.permissions.always_deny = ["bash"]
    cfg.save(path)

    loaded = Config.from_yaml(path)

    assert loaded.compaction.message_threshold == 40
    assert loaded.permissions.always_deny == ["bash"]


def test_resolved_working_directory_anchors_relative_paths(tmp_path: Path):
    cfg = Config()
    cfg.agent.working_directory = "project"

    assert cfg.resolved_working_directory(tmp_path) == (tmp_path / "project").resolve()

    cfg.agent.working_directory = str(tmp_path)
    assert cfg.resolved_working_directory() == tmp_path.resolve()
