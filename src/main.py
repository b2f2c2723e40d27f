"""
Waste-basket inspection capture.

Opens the camera (or the looping demo clip), runs throttled object detection
with an on-screen overlay, and captures face-blurred inspection images into a
draft that is finalized into the local inspection store.

Usage:
    python src/main.py --config config/config.yaml --display
    python src/main.py --demo --capture-after 120 --fill 40

Arguments:
    --config: Path to configuration file
    --demo: Use the looping demonstration clip instead of the camera
    --municipality: Municipality id to file inspections under
    --display: Show the camera view with the detection overlay ('c' captures, 'q' quits)
    --fill: Basket fill level (0-100) applied to the draft before saving
    --capture-after: Capture automatically after N ticks, save and exit
"""

import os
import sys
import argparse
import logging
from concurrent.futures import Future, wait
from typing import Dict, Any, Tuple, Optional

import yaml

from inference.errors import BackendUnavailable, CaptureAborted, ModelInitError
from models.config import Config
from models.draft import MUNICIPALITIES, get_municipality
from observation import create_source_from_config
from ops.logging import VALID_LOG_LEVELS, setup_logging
from runtime.context import RuntimeContext, create_context
from storage.inspections import InspectionStore

# Longest the exit path waits for a capture still running on the worker
CAPTURE_WAIT_TIMEOUT_S = 10.0


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge override into base and return base."""
    for k, v in (override or {}).items():
        if isinstance(v, dict) and isinstance(base.get(k), dict):
            _deep_merge(base[k], v)
        else:
            base[k] = v
    return base


def load_config(config_path: str) -> Dict[str, Any]:
    """
    Load configuration with layering:
    - `config/default.yaml` (checked in)
    - `config/config.yaml` (local overrides)
    - plus any explicitly provided `--config` path (treated as overrides)
    """
    try:
        base_path = os.path.join(os.path.dirname(config_path), "default.yaml")
        base_cfg: Dict[str, Any] = {}
        if os.path.exists(base_path):
            with open(base_path, "r") as f:
                base_cfg = yaml.safe_load(f) or {}

        local_overrides_path = os.path.join(os.path.dirname(config_path), "config.yaml")
        local_cfg: Dict[str, Any] = {}
        if os.path.exists(local_overrides_path):
            with open(local_overrides_path, "r") as f:
                local_cfg = yaml.safe_load(f) or {}

        merged = _deep_merge(base_cfg, local_cfg)

        if os.path.exists(config_path) and os.path.abspath(config_path) != os.path.abspath(local_overrides_path):
            with open(config_path, "r") as f:
                explicit_cfg = yaml.safe_load(f) or {}
            merged = _deep_merge(merged, explicit_cfg)

        return merged
    except Exception as e:
        logging.error(f"Failed to load configuration: {e}")
        sys.exit(1)


def validate_config(config: Dict[str, Any]) -> Tuple[bool, Optional[str]]:
    """
    Validate configuration file structure and values.

    Args:
        config: Configuration dictionary

    Returns:
        Tuple of (is_valid, error_message)
    """
    required_sections = ['camera', 'backend', 'models', 'detection', 'storage', 'log_path', 'log_level']
    for section in required_sections:
        if section not in config:
            return False, f"Missing required configuration section: {section}"

    # Camera
    camera = config.get('camera', {}) or {}
    if 'device_id' not in camera:
        return False, "Missing camera.device_id"
    if not isinstance(camera['device_id'], (int, str)):
        return False, "camera.device_id must be an integer (index) or string (URL or file)"
    if isinstance(camera['device_id'], int) and camera['device_id'] < 0:
        return False, "camera.device_id integer must be non-negative"
    if 'resolution' in camera:
        res = camera['resolution']
        if not isinstance(res, list) or len(res) != 2 or not all(isinstance(x, int) and x > 0 for x in res):
            return False, "camera.resolution must be a list of two positive integers [width, height]"
    if 'fps' in camera and (not isinstance(camera['fps'], int) or camera['fps'] <= 0):
        return False, "camera.fps must be a positive integer"
    if camera.get('rotate', 0) not in (0, 90, 180, 270):
        return False, "camera.rotate must be one of: 0, 90, 180, 270"

    # Backend
    backend = config.get('backend', {}) or {}
    preference = backend.get('preference', ['cuda', 'cpu'])
    if not isinstance(preference, list) or not preference:
        return False, "backend.preference must be a non-empty list"
    unknown = [p for p in preference if p not in ('cuda', 'cpu')]
    if unknown:
        return False, f"backend.preference has unknown backend(s): {', '.join(map(str, unknown))}"
    if 'ready_timeout_s' in backend and (
        not isinstance(backend['ready_timeout_s'], (int, float)) or backend['ready_timeout_s'] <= 0
    ):
        return False, "backend.ready_timeout_s must be a positive number"

    # Models
    models = config.get('models', {}) or {}
    for kind in ('object_detector', 'face_locator'):
        files = models.get(kind)
        if not isinstance(files, dict):
            return False, f"Missing models.{kind}"
        if not files.get('remote_url') and not files.get('local_path'):
            return False, f"models.{kind} needs a remote_url or a local_path"
        threshold = files.get('score_threshold', 0.5)
        if not isinstance(threshold, (int, float)) or not (0 <= threshold <= 1):
            return False, f"models.{kind}.score_threshold must be between 0 and 1"

    # Detection
    detection = config.get('detection', {}) or {}
    throttle = detection.get('throttle_factor', 8)
    if not isinstance(throttle, int) or throttle < 1:
        return False, "detection.throttle_factor must be a positive integer"
    min_conf = detection.get('min_confidence', 0.5)
    if not isinstance(min_conf, (int, float)) or not (0 <= min_conf <= 1):
        return False, "detection.min_confidence must be between 0 and 1"

    # Capture
    capture = config.get('capture', {}) or {}
    quality = capture.get('jpeg_quality', 0.7)
    if not isinstance(quality, (int, float)) or not (0 < quality <= 1):
        return False, "capture.jpeg_quality must be in (0, 1]"
    max_width = capture.get('max_width', 1280)
    if not isinstance(max_width, int) or max_width <= 0:
        return False, "capture.max_width must be a positive integer"

    # Draft
    draft = config.get('draft', {}) or {}
    if 'default_municipality' in draft and get_municipality(draft['default_municipality']) is None:
        return False, f"draft.default_municipality must be one of: {', '.join(m.id for m in MUNICIPALITIES)}"

    # Storage
    storage = config.get('storage', {}) or {}
    if 'local_database_path' not in storage:
        return False, "Missing storage.local_database_path"
    if not isinstance(storage['local_database_path'], str):
        return False, "storage.local_database_path must be a string"

    # Logging
    if config['log_level'] not in VALID_LOG_LEVELS:
        return False, f"log_level must be one of: {', '.join(VALID_LOG_LEVELS)}"

    return True, None


def _initialize_with_retry(ctx: RuntimeContext, attempts: int = 2) -> bool:
    """Initialize the runtime, retrying once from scratch on a terminal error."""
    for attempt in range(1, attempts + 1):
        try:
            if attempt == 1:
                ctx.initialize()
            else:
                ctx.retry()
            return True
        except (BackendUnavailable, ModelInitError) as e:
            logging.error(f"Initialization attempt {attempt}/{attempts} failed: {e}")
    return False


class CaptureDriver:
    """
    Runs captures on the pipeline's worker and collects them on a later tick.

    With ``capture_after`` set (headless mode) the first successful capture
    is finalized into ``store`` exactly once and the loop is stopped, whether
    the save worked or not.
    """

    def __init__(
        self,
        ctx: RuntimeContext,
        store: Any,
        municipality_id: Optional[str] = None,
        fill: Optional[float] = None,
        capture_after: Optional[int] = None,
    ):
        self.ctx = ctx
        self.store = store
        self.municipality_id = municipality_id
        self.fill = fill
        self.capture_after = capture_after
        self.finished = False
        self.record = None
        self.error: Optional[Exception] = None
        self._pending: Optional[Future] = None

    @property
    def pending(self) -> bool:
        return self._pending is not None

    def trigger(self) -> bool:
        """Start a capture in the background. Returns False if one is already running."""
        if self._pending is not None:
            logging.info("Capture already in progress, ignoring trigger")
            return False
        future = self.ctx.capture.submit(self.municipality_id)
        if future is None:
            return False
        self._pending = future
        return True

    def on_tick(self, frame_data, batch) -> None:
        self.collect()
        if self.capture_after is None or self.finished or self._pending is not None:
            return
        if self.ctx.loop.stats.ticks >= self.capture_after:
            self.trigger()

    def collect(self) -> None:
        """Apply a finished capture, if any."""
        future = self._pending
        if future is None or not future.done():
            return
        self._pending = None
        try:
            result = future.result()
        except CaptureAborted as e:
            logging.error(f"Capture failed, try again: {e}")
            return
        if result.degraded:
            logging.warning(f"Captured image was stored with faces left unblurred: {result.warning}")
        if self.capture_after is not None and not self.finished:
            self.finalize()

    def wait(self, timeout: Optional[float] = None) -> None:
        """Block until a running capture settles, then collect it."""
        if self._pending is not None:
            wait([self._pending], timeout=timeout)
            self.collect()

    def finalize(self) -> None:
        """Save the draft once. A failed save is recorded and reported, never retried."""
        self.finished = True
        if self.fill is not None:
            self.ctx.session.set_fill(self.fill)
        try:
            self.record = self.ctx.session.finalize(self.store)
        except Exception as e:
            self.error = e
            logging.error(f"Inspection was not saved: {e}")
        else:
            logging.info(f"Inspection {self.record.id} finalized with counts {self.record.counts.model_dump()}")
        if self.ctx.loop is not None:
            self.ctx.loop.stop()


def main():
    """Main application function."""
    parser = argparse.ArgumentParser(description='Waste-basket inspection capture')
    parser.add_argument('--config', type=str, default='config/config.yaml',
                        help='Path to configuration file')
    parser.add_argument('--demo', action='store_true',
                        help='Use the looping demonstration clip instead of the camera')
    parser.add_argument('--municipality', type=str, default=None,
                        help='Municipality id for captured inspections')
    parser.add_argument('--display', action='store_true',
                        help='Enable visual display')
    parser.add_argument('--fill', type=float, default=None,
                        help='Basket fill level (0-100) applied before saving')
    parser.add_argument('--capture-after', type=int, default=None,
                        help='Capture after N ticks, save the inspection and exit')
    args = parser.parse_args()

    config_dict = load_config(args.config)

    is_valid, error_msg = validate_config(config_dict)
    if not is_valid:
        logging.error(f"Configuration validation failed: {error_msg}")
        sys.exit(1)

    if args.municipality and get_municipality(args.municipality) is None:
        logging.error(f"Unknown municipality: {args.municipality}")
        sys.exit(1)

    config = Config.from_dict(config_dict)
    setup_logging(config.log_path, config.log_level)
    logging.info(f"Starting inspection capture (demo={args.demo})")

    store = InspectionStore(config.storage.local_database_path)
    ctx = create_context(config, store=store)

    if not _initialize_with_retry(ctx):
        logging.error("Could not initialize compute backend and models, exiting")
        store.close()
        sys.exit(1)

    source = create_source_from_config(config.camera.to_dict(), demo=args.demo)
    loop = ctx.attach_source(source, display=args.display)
    driver = CaptureDriver(
        ctx,
        store,
        municipality_id=args.municipality,
        fill=args.fill,
        capture_after=args.capture_after,
    )
    loop.add_callback(driver.on_tick)
    loop.add_key_handler('c', driver.trigger)

    try:
        loop.run()
    finally:
        driver.wait(timeout=CAPTURE_WAIT_TIMEOUT_S)
        if ctx.session.has_draft and not driver.finished:
            driver.finalize()
        logging.info(f"Status: {ctx.status().to_dict()}")
        ctx.shutdown()

    if driver.error is not None:
        sys.exit(1)


if __name__ == "__main__":
    main()
