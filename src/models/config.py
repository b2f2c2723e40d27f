"""
Typed configuration models matching the YAML config structure.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

DEFAULT_BENIGN_PATTERNS = [r"backend name '[^']*' not found"]


@dataclass
class CameraConfig:
    """Frame source configuration."""
    device_id: Union[int, str] = 0
    resolution: List[int] = field(default_factory=lambda: [1280, 720])
    fps: int = 30
    buffer_size: int = 1
    max_retries: int = 3
    swap_rb: bool = False
    rotate: int = 0
    flip_horizontal: bool = False
    flip_vertical: bool = False
    demo_clip: str = "samples/street_gutter_debris.mp4"

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "CameraConfig":
        """Adapter: Create from config dictionary."""
        return cls(
            device_id=d.get("device_id", 0),
            resolution=d.get("resolution", [1280, 720]),
            fps=d.get("fps", 30),
            buffer_size=d.get("buffer_size", 1),
            max_retries=d.get("max_retries", 3),
            swap_rb=d.get("swap_rb", False),
            rotate=d.get("rotate", 0) or 0,
            flip_horizontal=d.get("flip_horizontal", False),
            flip_vertical=d.get("flip_vertical", False),
            demo_clip=d.get("demo_clip", "samples/street_gutter_debris.mp4"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "device_id": self.device_id,
            "resolution": self.resolution,
            "fps": self.fps,
            "buffer_size": self.buffer_size,
            "max_retries": self.max_retries,
            "swap_rb": self.swap_rb,
            "rotate": self.rotate,
            "flip_horizontal": self.flip_horizontal,
            "flip_vertical": self.flip_vertical,
            "demo_clip": self.demo_clip,
        }


@dataclass
class BackendConfig:
    """Compute backend selection."""
    preference: List[str] = field(default_factory=lambda: ["cuda", "cpu"])
    ready_timeout_s: float = 5.0
    benign_error_patterns: List[str] = field(default_factory=lambda: list(DEFAULT_BENIGN_PATTERNS))

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "BackendConfig":
        return cls(
            preference=list(d.get("preference", ["cuda", "cpu"])),
            ready_timeout_s=d.get("ready_timeout_s", 5.0),
            benign_error_patterns=list(d.get("benign_error_patterns", DEFAULT_BENIGN_PATTERNS)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "preference": self.preference,
            "ready_timeout_s": self.ready_timeout_s,
            "benign_error_patterns": self.benign_error_patterns,
        }


@dataclass
class ModelFilesConfig:
    """
    Where one model's files come from.

    The remote URLs are tried first; the local paths are the bundled fallback.
    ``config`` entries are only used by models that need a separate graph
    description (the SSD detector's .pbtxt).
    """
    remote_url: Optional[str] = None
    remote_config_url: Optional[str] = None
    local_path: Optional[str] = None
    local_config_path: Optional[str] = None
    input_size: List[int] = field(default_factory=lambda: [300, 300])
    score_threshold: float = 0.5

    @classmethod
    def from_dict(cls, d: Dict[str, Any], default_input_size: Optional[List[int]] = None) -> "ModelFilesConfig":
        return cls(
            remote_url=d.get("remote_url"),
            remote_config_url=d.get("remote_config_url"),
            local_path=d.get("local_path"),
            local_config_path=d.get("local_config_path"),
            input_size=list(d.get("input_size", default_input_size or [300, 300])),
            score_threshold=d.get("score_threshold", 0.5),
        )

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "input_size": self.input_size,
            "score_threshold": self.score_threshold,
        }
        for key in ("remote_url", "remote_config_url", "local_path", "local_config_path"):
            value = getattr(self, key)
            if value is not None:
                d[key] = value
        return d


@dataclass
class ModelsConfig:
    """Model registry configuration."""
    cache_dir: str = "data/models"
    download_timeout_s: float = 60.0
    object_detector: ModelFilesConfig = field(default_factory=ModelFilesConfig)
    face_locator: ModelFilesConfig = field(
        default_factory=lambda: ModelFilesConfig(input_size=[320, 320], score_threshold=0.6)
    )

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "ModelsConfig":
        return cls(
            cache_dir=d.get("cache_dir", "data/models"),
            download_timeout_s=d.get("download_timeout_s", 60.0),
            object_detector=ModelFilesConfig.from_dict(d.get("object_detector", {}) or {}, [300, 300]),
            face_locator=ModelFilesConfig.from_dict(d.get("face_locator", {}) or {}, [320, 320]),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cache_dir": self.cache_dir,
            "download_timeout_s": self.download_timeout_s,
            "object_detector": self.object_detector.to_dict(),
            "face_locator": self.face_locator.to_dict(),
        }


@dataclass
class DetectionConfig:
    """Detection loop configuration."""
    throttle_factor: int = 8
    min_confidence: float = 0.5
    classes: List[str] = field(default_factory=lambda: ["bottle", "cup", "fork", "knife", "spoon"])
    refresh_hz: float = 60.0

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "DetectionConfig":
        return cls(
            throttle_factor=d.get("throttle_factor", 8),
            min_confidence=d.get("min_confidence", 0.5),
            classes=list(d.get("classes", ["bottle", "cup", "fork", "knife", "spoon"])),
            refresh_hz=d.get("refresh_hz", 60.0),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "throttle_factor": self.throttle_factor,
            "min_confidence": self.min_confidence,
            "classes": self.classes,
            "refresh_hz": self.refresh_hz,
        }


@dataclass
class CaptureConfig:
    """Capture pipeline configuration."""
    max_width: int = 1280
    jpeg_quality: float = 0.7
    blur_min_kernel: int = 51

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "CaptureConfig":
        return cls(
            max_width=d.get("max_width", 1280),
            jpeg_quality=d.get("jpeg_quality", 0.7),
            blur_min_kernel=d.get("blur_min_kernel", 51),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "max_width": self.max_width,
            "jpeg_quality": self.jpeg_quality,
            "blur_min_kernel": self.blur_min_kernel,
        }


@dataclass
class DraftConfig:
    """Draft record defaults."""
    default_municipality: str = "demo-miami"
    basket_max_liters: float = 120

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "DraftConfig":
        return cls(
            default_municipality=d.get("default_municipality", "demo-miami"),
            basket_max_liters=d.get("basket_max_liters", 120),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "default_municipality": self.default_municipality,
            "basket_max_liters": self.basket_max_liters,
        }


@dataclass
class StorageConfig:
    """Storage configuration for finalized inspections."""
    local_database_path: str = "data/inspections.sqlite"

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "StorageConfig":
        return cls(local_database_path=d.get("local_database_path", "data/inspections.sqlite"))

    def to_dict(self) -> Dict[str, Any]:
        return {"local_database_path": self.local_database_path}


@dataclass
class Config:
    """
    Complete application configuration.

    This is a typed representation of the YAML config structure.
    """
    camera: CameraConfig = field(default_factory=CameraConfig)
    backend: BackendConfig = field(default_factory=BackendConfig)
    models: ModelsConfig = field(default_factory=ModelsConfig)
    detection: DetectionConfig = field(default_factory=DetectionConfig)
    capture: CaptureConfig = field(default_factory=CaptureConfig)
    draft: DraftConfig = field(default_factory=DraftConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    log_path: str = "logs/inspection.log"
    log_level: str = "INFO"

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Config":
        """Adapter: Create Config from raw dictionary (e.g., from load_config)."""
        return cls(
            camera=CameraConfig.from_dict(d.get("camera", {}) or {}),
            backend=BackendConfig.from_dict(d.get("backend", {}) or {}),
            models=ModelsConfig.from_dict(d.get("models", {}) or {}),
            detection=DetectionConfig.from_dict(d.get("detection", {}) or {}),
            capture=CaptureConfig.from_dict(d.get("capture", {}) or {}),
            draft=DraftConfig.from_dict(d.get("draft", {}) or {}),
            storage=StorageConfig.from_dict(d.get("storage", {}) or {}),
            log_path=d.get("log_path", "logs/inspection.log"),
            log_level=d.get("log_level", "INFO"),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert back to dictionary."""
        return {
            "camera": self.camera.to_dict(),
            "backend": self.backend.to_dict(),
            "models": self.models.to_dict(),
            "detection": self.detection.to_dict(),
            "capture": self.capture.to_dict(),
            "draft": self.draft.to_dict(),
            "storage": self.storage.to_dict(),
            "log_path": self.log_path,
            "log_level": self.log_level,
        }
