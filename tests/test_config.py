import json

import pytest

from emoscope.config import DEFAULTS, PACKAGE_MODEL_DIR, Settings, load_config, load_settings


def test_defaults_without_file_or_environment():
    settings = load_settings(environ={})

    assert settings.shard_count == DEFAULTS["shard_count"]
    assert settings.capture_interval == 2.0
    assert settings.mirror is True
    assert settings.candidate_locations() == ["model_bundle", str(PACKAGE_MODEL_DIR)]


def test_yaml_file_overrides_defaults(tmp_path):
    config = tmp_path / "emoscope.yaml"
    config.write_text("model_dir: bundles/v2\nshard_count: 2\ncapture_interval: 0.5\nmirror: false\n")

    settings = load_settings(config, environ={})

    assert settings.model_dir == "bundles/v2"
    assert settings.shard_count == 2
    assert settings.capture_interval == 0.5
    assert settings.mirror is False


def test_json_file_is_accepted(tmp_path):
    config = tmp_path / "emoscope.json"
    config.write_text(json.dumps({"demo_seed": "3", "camera_index": 1}))

    settings = load_settings(config, environ={})

    assert settings.demo_seed == 3
    assert settings.camera_index == 1


def test_environment_then_overrides_take_precedence(tmp_path):
    config = tmp_path / "emoscope.yaml"
    config.write_text("device: cuda\n")
    environ = {"EMOSCOPE_DEVICE": "auto", "EMOSCOPE_MODEL_BASE": "https://cdn.example.com/model"}

    settings = load_settings(config, overrides={"model_dir": "local", "device": None}, environ=environ)

    assert settings.device == "auto"
    assert settings.candidate_locations() == ["local", "https://cdn.example.com/model", str(PACKAGE_MODEL_DIR)]


def test_candidate_locations_are_deduplicated():
    settings = Settings(model_dir="bundle", model_base="bundle", model_origin="https://origin.example.com/m")

    assert settings.candidate_locations() == ["bundle", "https://origin.example.com/m", str(PACKAGE_MODEL_DIR)]


def test_unknown_keys_are_rejected(tmp_path):
    config = tmp_path / "emoscope.yaml"
    config.write_text("model_dri: typo\n")

    with pytest.raises(ValueError, match="model_dri"):
        load_settings(config, environ={})
    with pytest.raises(ValueError, match="Unknown setting"):
        load_settings(overrides={"colour": "red"}, environ={})


def test_missing_and_malformed_files(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "absent.yaml")

    config = tmp_path / "list.yaml"
    config.write_text("- a\n- b\n")
    with pytest.raises(ValueError, match="mapping"):
        load_config(config)


@pytest.mark.parametrize("field, value", [("shard_count", 0), ("capture_interval", 0.0)])
def test_invalid_values_are_rejected(field, value):
    with pytest.raises(ValueError, match=field):
        Settings(**{field: value})
