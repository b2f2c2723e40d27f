"""
Smoke tests for configuration loading and validation.
"""

import pytest

from main import load_config, validate_config
from models.config import Config


class TestValidateConfig:
    """Tests for validate_config function."""

    def test_valid_config_passes(self, valid_config):
        """A complete valid config passes validation."""
        is_valid, error = validate_config(valid_config)

        assert is_valid is True
        assert error is None

    @pytest.mark.parametrize("section", ["camera", "backend", "models", "detection", "storage", "log_path", "log_level"])
    def test_missing_required_section(self, valid_config, section):
        del valid_config[section]

        is_valid, error = validate_config(valid_config)

        assert is_valid is False
        assert section in error.lower()

    def test_capture_and_draft_are_optional(self, valid_config):
        del valid_config["capture"]
        del valid_config["draft"]

        assert validate_config(valid_config) == (True, None)

    def test_invalid_device_id_type(self, valid_config):
        """device_id with invalid type fails."""
        valid_config["camera"]["device_id"] = [1, 2, 3]

        is_valid, error = validate_config(valid_config)

        assert is_valid is False
        assert "device_id" in error.lower()

    def test_negative_device_id(self, valid_config):
        valid_config["camera"]["device_id"] = -1

        is_valid, error = validate_config(valid_config)

        assert is_valid is False
        assert "device_id" in error.lower()

    def test_device_id_may_be_a_path(self, valid_config):
        valid_config["camera"]["device_id"] = "samples/clip.mp4"
        assert validate_config(valid_config)[0] is True

    def test_invalid_resolution(self, valid_config):
        valid_config["camera"]["resolution"] = [1280]

        is_valid, error = validate_config(valid_config)

        assert is_valid is False
        assert "resolution" in error.lower()

    def test_invalid_rotate(self, valid_config):
        valid_config["camera"]["rotate"] = 45

        is_valid, error = validate_config(valid_config)

        assert is_valid is False
        assert "rotate" in error.lower()

    def test_unknown_backend(self, valid_config):
        valid_config["backend"]["preference"] = ["cuda", "tpu"]

        is_valid, error = validate_config(valid_config)

        assert is_valid is False
        assert "tpu" in error

    def test_empty_backend_preference(self, valid_config):
        valid_config["backend"]["preference"] = []
        assert validate_config(valid_config)[0] is False

    def test_model_needs_a_location(self, valid_config):
        valid_config["models"]["face_locator"] = {"score_threshold": 0.6}

        is_valid, error = validate_config(valid_config)

        assert is_valid is False
        assert "face_locator" in error

    def test_model_threshold_range(self, valid_config):
        valid_config["models"]["object_detector"]["score_threshold"] = 1.5

        is_valid, error = validate_config(valid_config)

        assert is_valid is False
        assert "score_threshold" in error

    def test_invalid_throttle_factor(self, valid_config):
        valid_config["detection"]["throttle_factor"] = 0

        is_valid, error = validate_config(valid_config)

        assert is_valid is False
        assert "throttle_factor" in error

    def test_invalid_min_confidence(self, valid_config):
        valid_config["detection"]["min_confidence"] = -0.1
        assert validate_config(valid_config)[0] is False

    def test_invalid_jpeg_quality(self, valid_config):
        valid_config["capture"]["jpeg_quality"] = 70

        is_valid, error = validate_config(valid_config)

        assert is_valid is False
        assert "jpeg_quality" in error

    def test_unknown_municipality(self, valid_config):
        valid_config["draft"]["default_municipality"] = "atlantis"

        is_valid, error = validate_config(valid_config)

        assert is_valid is False
        assert "default_municipality" in error

    def test_missing_database_path(self, valid_config):
        valid_config["storage"] = {}

        is_valid, error = validate_config(valid_config)

        assert is_valid is False
        assert "local_database_path" in error

    def test_invalid_log_level(self, valid_config):
        valid_config["log_level"] = "LOUD"

        is_valid, error = validate_config(valid_config)

        assert is_valid is False
        assert "log_level" in error


class TestLoadConfig:
    """Tests for layered config loading."""

    def test_loads_defaults(self, temp_config_dir):
        config = load_config(str(temp_config_dir / "config.yaml"))

        assert config["detection"]["throttle_factor"] == 8
        assert config["backend"]["preference"] == ["cuda", "cpu"]

    def test_local_overrides_merge(self, temp_config_dir):
        (temp_config_dir / "config.yaml").write_text("""
detection:
  throttle_factor: 4
camera:
  device_id: "samples/clip.mp4"
""")

        config = load_config(str(temp_config_dir / "config.yaml"))

        assert config["detection"]["throttle_factor"] == 4
        assert config["detection"]["min_confidence"] == 0.5
        assert config["camera"]["device_id"] == "samples/clip.mp4"
        assert config["camera"]["fps"] == 30

    def test_explicit_file_applied_last(self, temp_config_dir):
        (temp_config_dir / "config.yaml").write_text("log_level: DEBUG\n")
        explicit = temp_config_dir / "field.yaml"
        explicit.write_text("log_level: WARNING\n")

        config = load_config(str(explicit))

        assert config["log_level"] == "WARNING"

    def test_loaded_defaults_validate(self, temp_config_dir):
        config = load_config(str(temp_config_dir / "config.yaml"))
        assert validate_config(config) == (True, None)

    def test_malformed_yaml_exits(self, temp_config_dir):
        (temp_config_dir / "config.yaml").write_text("detection: [unclosed\n")

        with pytest.raises(SystemExit):
            load_config(str(temp_config_dir / "config.yaml"))


class TestTypedConfig:
    def test_round_trip(self, valid_config):
        config = Config.from_dict(valid_config)

        assert config.detection.throttle_factor == 8
        assert config.models.face_locator.local_path == "models/yunet.onnx"
        assert config.models.face_locator.input_size == [320, 320]
        assert Config.from_dict(config.to_dict()).to_dict() == config.to_dict()

    def test_defaults(self):
        config = Config.from_dict({})
        assert config.backend.preference == ["cuda", "cpu"]
        assert config.capture.jpeg_quality == 0.7
        assert config.draft.default_municipality == "demo-miami"
