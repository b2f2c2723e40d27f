"""
Pytest configuration and shared fixtures.
"""

import os
import sys

import numpy as np
import pytest

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))


@pytest.fixture
def temp_config_dir(tmp_path):
    """Create a temporary config directory with default.yaml."""
    config_dir = tmp_path / "config"
    config_dir.mkdir()

    default_yaml = config_dir / "default.yaml"
    default_yaml.write_text("""
camera:
  device_id: 0
  resolution: [640, 480]
  fps: 30

backend:
  preference: ["cuda", "cpu"]

models:
  object_detector:
    local_path: "models/ssd.pb"
  face_locator:
    local_path: "models/yunet.onnx"

detection:
  throttle_factor: 8
  min_confidence: 0.5

storage:
  local_database_path: "data/test.sqlite"

log_path: "logs/test.log"
log_level: "INFO"
""")

    return config_dir


@pytest.fixture
def valid_config():
    """Return a valid configuration dictionary."""
    return {
        "camera": {
            "device_id": 0,
            "resolution": [1280, 720],
            "fps": 30,
        },
        "backend": {
            "preference": ["cuda", "cpu"],
            "ready_timeout_s": 5.0,
        },
        "models": {
            "object_detector": {
                "remote_url": "https://example.invalid/ssd.pb",
                "local_path": "models/ssd.pb",
                "score_threshold": 0.3,
            },
            "face_locator": {
                "local_path": "models/yunet.onnx",
                "score_threshold": 0.6,
            },
        },
        "detection": {
            "throttle_factor": 8,
            "min_confidence": 0.5,
        },
        "capture": {
            "max_width": 1280,
            "jpeg_quality": 0.7,
        },
        "draft": {
            "default_municipality": "demo-miami",
        },
        "storage": {
            "local_database_path": "data/test.sqlite",
        },
        "log_path": "logs/test.log",
        "log_level": "INFO",
    }


@pytest.fixture
def noise_image():
    """A deterministic 240x320 BGR image of random noise."""
    rng = np.random.default_rng(1234)
    return rng.integers(0, 256, size=(240, 320, 3), dtype=np.uint8)
