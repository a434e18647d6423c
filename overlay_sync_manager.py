#!/usr/bin/env python3
"""
Reolink Overlay Sync Manager

Keeps the OSD text of Reolink cameras synchronized with a configured overlay
source (static text, telemetry from another device, the last detected face,
or a copy of another camera's overlay) at a fixed interval.

Usage:
    overlay_sync_manager.py config.json              # Start daemon
    overlay_sync_manager.py --validate config.json   # Validate configuration
    overlay_sync_manager.py --once config.json       # Run single sync cycle
"""

import argparse
import asyncio
import json
import logging
import signal
import sys
import time
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from overlay_sources import (
    DEFAULT_OVERLAY_ID,
    DetectionEventBus,
    FaceDetectionTracker,
    HttpTelemetrySource,
    JsonSettingsFile,
    OverlayKeys,
    OverlayPosition,
    OverlaySource,
    OverlayType,
    SettingsStore,
    TelemetryReading,
    TelemetrySource,
    resolve_overlay_text,
    seed_overlay_settings,
)
from reolink_client import (
    DEFAULT_KEEPALIVE_INTERVAL,
    ConfigError,
    OsdRepository,
    ReolinkError,
    ReolinkTransport,
    SessionManager,
)
from reolink_osd import ReolinkOsdClient

VERSION = "1.0.0"

DUPLICATE_FROM_DEVICE_KEY = "duplicateFromDevice"


# ============================================================================
# Configuration Data Classes
# ============================================================================


@dataclass
class OverlayConfig:
    """
    Initial settings of a camera's overlay.

    Only seeded into the settings store for keys it does not hold yet; after
    that the store is the source of truth.

    Attributes:
        type: "Text", "Device", "FaceDetection" or "DuplicateDevice"
        device: Telemetry device (Device) or camera name (DuplicateDevice)
        prefix: Text prepended to generated values
        text: Static text for the Text type
        position: OSD position (e.g. "Upper Left")
    """

    type: str = OverlayType.TEXT.value
    device: Optional[str] = None
    prefix: Optional[str] = None
    text: Optional[str] = None
    position: Optional[str] = None

    def as_settings(self) -> Dict[str, Optional[str]]:
        return {
            "type": self.type,
            "device": self.device,
            "prefix": self.prefix,
            "text": self.text,
            "position": self.position,
        }


@dataclass
class CameraConfig:
    """
    Configuration for a single Reolink camera.

    Attributes:
        name: Camera identifier (used in logs, settings and duplication)
        host: Camera IP address or hostname
        username: Camera username
        password: Camera password
        overlay: Initial overlay settings
        port: Camera HTTP(S) port
        https: Talk https instead of http
        channel: Video channel number (0 for standalone cameras)
        use_token: Token sessions if True, credentials on every call if False
    """

    name: str
    host: str
    username: str
    password: str
    overlay: OverlayConfig = field(default_factory=OverlayConfig)
    port: int = 80
    https: bool = False
    channel: int = 0
    use_token: bool = True


@dataclass
class ConfigurationRoot:
    """
    Top-level configuration object.

    Attributes:
        sync_interval: Seconds between sync cycles
        cameras: List of camera configurations
        timeout: HTTP request timeout in seconds
        keepalive_interval: Seconds between forced session refreshes
        log_level: Python logging level (DEBUG, INFO, WARNING, ERROR)
        settings_file: JSON file holding the overlay settings store
        telemetry: Telemetry device name -> JSON URL
    """

    sync_interval: float
    cameras: List[CameraConfig]
    timeout: float = 10
    keepalive_interval: float = DEFAULT_KEEPALIVE_INTERVAL
    log_level: str = "INFO"
    settings_file: str = "overlay_settings.json"
    telemetry: Dict[str, str] = field(default_factory=dict)


# ============================================================================
# Configuration Loading and Validation
# ============================================================================


def load_config(config_path: Path) -> ConfigurationRoot:
    """
    Load and parse JSON configuration file.

    Args:
        config_path: Path to JSON configuration file

    Returns:
        Parsed ConfigurationRoot object

    Raises:
        FileNotFoundError: If config file doesn't exist
        json.JSONDecodeError: If JSON is invalid
        KeyError: If required fields are missing
    """
    with open(config_path, "r", encoding="utf-8") as f:
        data = json.load(f)

    cameras = []
    for cam_data in data["cameras"]:
        ov = cam_data.get("overlay", {})
        overlay = OverlayConfig(
            type=ov.get("type", OverlayType.TEXT.value),
            device=ov.get("device"),
            prefix=ov.get("prefix"),
            text=ov.get("text"),
            position=ov.get("position"),
        )

        camera = CameraConfig(
            name=cam_data["name"],
            host=cam_data["host"],
            username=cam_data["username"],
            password=cam_data["password"],
            overlay=overlay,
            port=cam_data.get("port", 443 if cam_data.get("https") else 80),
            https=cam_data.get("https", False),
            channel=cam_data.get("channel", 0),
            use_token=cam_data.get("use_token", True),
        )
        cameras.append(camera)

    telemetry = {
        name: device["url"] if isinstance(device, dict) else device
        for name, device in data.get("telemetry", {}).items()
    }

    settings_file = data.get("settings_file", "overlay_settings.json")
    # Relative settings paths live next to the config file
    if not Path(settings_file).is_absolute():
        settings_file = str(Path(config_path).parent / settings_file)

    return ConfigurationRoot(
        sync_interval=data["sync_interval"],
        cameras=cameras,
        timeout=data.get("timeout", 10),
        keepalive_interval=data.get("keepalive_interval", DEFAULT_KEEPALIVE_INTERVAL),
        log_level=data.get("log_level", "INFO"),
        settings_file=settings_file,
        telemetry=telemetry,
    )


def validate_config(config: ConfigurationRoot) -> tuple[bool, List[str]]:
    """
    Validate configuration.

    Args:
        config: Configuration to validate

    Returns:
        Tuple of (is_valid, list_of_errors)
    """
    errors = []

    if config.sync_interval <= 0:
        errors.append(f"sync_interval must be > 0, got: {config.sync_interval}")

    if config.timeout <= 0:
        errors.append(f"timeout must be > 0, got: {config.timeout}")

    if config.keepalive_interval <= 0:
        errors.append(f"keepalive_interval must be > 0, got: {config.keepalive_interval}")

    # Warn if timeout > sync_interval
    if 0 < config.sync_interval < config.timeout:
        logging.warning(
            f"timeout ({config.timeout}s) is greater than sync_interval ({config.sync_interval}s). "
            f"Slow cycles will cause ticks to be skipped."
        )

    valid_log_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
    if config.log_level not in valid_log_levels:
        errors.append(
            f"log_level must be one of {valid_log_levels}, got: '{config.log_level}'"
        )

    if not config.cameras:
        errors.append("cameras list must not be empty")

    camera_names = [cam.name for cam in config.cameras]
    if len(camera_names) != len(set(camera_names)):
        duplicates = [name for name in camera_names if camera_names.count(name) > 1]
        errors.append(f"Duplicate camera names found: {set(duplicates)}")

    valid_types = [t.value for t in OverlayType if t is not OverlayType.UNKNOWN]
    valid_positions = [p.value for p in OverlayPosition]

    for camera in config.cameras:
        if not camera.name:
            errors.append("Camera name must not be empty")
        if not camera.host:
            errors.append(f"Camera '{camera.name}': host must not be empty")
        if not camera.username:
            errors.append(f"Camera '{camera.name}': username must not be empty")
        if not camera.password:
            errors.append(f"Camera '{camera.name}': password must not be empty")

        if not (1 <= camera.port <= 65535):
            errors.append(
                f"Camera '{camera.name}': port must be 1-65535, got: {camera.port}"
            )

        if camera.channel < 0:
            errors.append(
                f"Camera '{camera.name}': channel must be >= 0, got: {camera.channel}"
            )

        overlay = camera.overlay
        if overlay.type not in valid_types:
            errors.append(
                f"Camera '{camera.name}': overlay type must be one of {valid_types}, "
                f"got: '{overlay.type}'"
            )
        if overlay.position is not None and overlay.position not in valid_positions:
            errors.append(
                f"Camera '{camera.name}': overlay position must be one of {valid_positions}, "
                f"got: '{overlay.position}'"
            )

        if overlay.type == OverlayType.DEVICE.value:
            if not overlay.device:
                errors.append(f"Camera '{camera.name}': Device overlay needs a 'device'")
            elif overlay.device not in config.telemetry:
                errors.append(
                    f"Camera '{camera.name}': telemetry device '{overlay.device}' is not configured"
                )

        if overlay.type == OverlayType.DUPLICATE_DEVICE.value:
            if not overlay.device or overlay.device not in camera_names:
                errors.append(
                    f"Camera '{camera.name}': DuplicateDevice overlay must name another camera, "
                    f"got: '{overlay.device}'"
                )
            elif overlay.device == camera.name:
                errors.append(f"Camera '{camera.name}': cannot duplicate from itself")

    is_valid = len(errors) == 0
    return is_valid, errors


# ============================================================================
# Logging Setup
# ============================================================================


def setup_logging(log_level: str = "INFO") -> None:
    """
    Configure Python logging.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    logging.basicConfig(
        level=getattr(logging, log_level),
        format="%(asctime)s.%(msecs)03d [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    # Reduce per-request noise from the HTTP stack
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


# ============================================================================
# Connection Testing
# ============================================================================


def probe_camera(camera: CameraConfig, timeout: float) -> bool:
    """
    Test if camera is reachable before starting sync loop.

    Args:
        camera: Camera configuration to test
        timeout: Connection timeout in seconds

    Returns:
        True if camera responds, False otherwise
    """
    try:
        client = ReolinkOsdClient(
            host=camera.host,
            username=camera.username,
            password=camera.password,
            port=camera.port,
            https=camera.https,
            channel=camera.channel,
        )
        return client.get_device_name(timeout) is not None

    except Exception as e:
        logging.debug(f"Connection test failed for '{camera.name}': {e}")
        return False


def probe_all_cameras(config: ConfigurationRoot) -> tuple[int, int]:
    """
    Test connection to all cameras before starting sync loop.

    Returns:
        Tuple of (reachable_count, total_count)
    """
    reachable = 0
    total = len(config.cameras)

    logging.info("Testing camera connections...")
    for camera in config.cameras:
        if probe_camera(camera, config.timeout):
            logging.info(f"  ✓ Camera '{camera.name}' is reachable")
            reachable += 1
        else:
            logging.warning(f"  ✗ Camera '{camera.name}' is not reachable")

    return reachable, total


# ============================================================================
# Device Registry
# ============================================================================


class DeviceRegistry:
    """Camera name -> running sync engine, used to find duplication peers."""

    def __init__(self):
        self._engines: Dict[str, "OverlaySyncEngine"] = {}

    def register(self, name: str, engine: "OverlaySyncEngine"):
        if name in self._engines and self._engines[name] is not engine:
            raise ConfigError(f"camera '{name}' is already registered")
        self._engines[name] = engine

    def deregister(self, name: str, engine: "OverlaySyncEngine"):
        # Only drop the entry if it still belongs to this engine
        if self._engines.get(name) is engine:
            del self._engines[name]

    def get(self, name: str) -> Optional["OverlaySyncEngine"]:
        return self._engines.get(name)

    def names(self) -> List[str]:
        return list(self._engines)


# ============================================================================
# Overlay Sync Engine (one per camera)
# ============================================================================


class OverlaySyncEngine:
    """
    Periodically pushes one camera's overlay text to its OSD.

    Each tick re-reads the overlay settings, resolves the text, performs a
    fetch -> merge -> write of the OSD document and refreshes the cached
    device name. Ticks never overlap; a tick that overruns the interval
    causes the overdue ticks to be skipped.
    """

    def __init__(
        self,
        name: str,
        session: SessionManager,
        osd: OsdRepository,
        store: SettingsStore,
        registry: DeviceRegistry,
        events: DetectionEventBus,
        telemetry: Optional[TelemetrySource] = None,
        overlay_id: str = DEFAULT_OVERLAY_ID,
        sync_interval: float = 10.0,
    ):
        self.name = name
        self.session = session
        self.osd = osd
        self.store = store
        self.registry = registry
        self.telemetry = telemetry
        self.overlay_id = overlay_id
        self.keys = OverlayKeys.for_overlay(overlay_id)
        self.sync_interval = sync_interval
        self.tracker = FaceDetectionTracker(events, name)

        self.terminated = False
        self.syncing = False
        self.cycle_count = 0
        self.skipped_count = 0
        self._task: Optional[asyncio.Task] = None

        registry.register(name, self)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self):
        """Start keepalive and the tick loop; the first tick runs immediately."""
        if self.terminated:
            raise RuntimeError(f"engine for '{self.name}' has been stopped")
        if self._task is not None:
            return
        self.session.start_keepalive()
        self._task = asyncio.create_task(self._run())
        logging.info(f"Started overlay sync for '{self.name}' (interval: {self.sync_interval}s)")

    async def stop(self):
        """
        Tear the engine down.

        Cancels the tick loop (discarding any in-flight tick), closes the
        face detection subscription, stops session keepalive and leaves the
        registry. Safe to call more than once.
        """
        if self.terminated:
            return
        self.terminated = True

        task = self._task
        self._task = None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        self.tracker.stop()
        await self.session.stop_keepalive()
        self.registry.deregister(self.name, self)
        logging.info(f"Stopped overlay sync for '{self.name}'")

    async def _run(self):
        loop = asyncio.get_running_loop()
        next_tick = loop.time()

        while not self.terminated:
            current = loop.time()
            if current < next_tick:
                await asyncio.sleep(next_tick - current)
                continue

            self.cycle_count += 1
            scheduled_time = next_tick
            next_tick += self.sync_interval

            drift = (loop.time() - scheduled_time) * 1000
            if abs(drift) > 10:
                logging.debug(f"'{self.name}' sync cycle {self.cycle_count} (drift: {drift:+.1f}ms)")
            else:
                logging.debug(f"'{self.name}' sync cycle {self.cycle_count}")

            await self.run_tick()

            # Skip ticks that fell due while this one was running
            current = loop.time()
            if current >= next_tick:
                skipped = int((current - next_tick) // self.sync_interval) + 1
                self.skipped_count += skipped
                next_tick += skipped * self.sync_interval
                logging.warning(
                    f"Sync cycle {self.cycle_count} on '{self.name}' took "
                    f"{current - scheduled_time:.3f}s (interval {self.sync_interval}s), "
                    f"skipping {skipped} overdue cycle(s)"
                )

    async def run_tick(self) -> bool:
        """
        Run one synchronization tick.

        Never raises; failures are logged and reported through the return
        value.

        Returns:
            True if every step succeeded
        """
        if self.syncing:
            logging.warning(f"Sync on '{self.name}' still in progress, skipping tick")
            return False

        self.syncing = True
        start_time = time.time()
        try:
            source = OverlaySource.load(self.store, self.overlay_id)
            self._update_face_subscription(source)

            overlay_ok = await self._sync_overlay(source)
            name_ok = await self._refresh_name_cache()
            success = overlay_ok and name_ok

            duration = time.time() - start_time
            logging.debug(
                f"Sync tick on '{self.name}' finished in {duration * 1000:.0f}ms "
                f"({'ok' if success else 'with errors'})"
            )
            return success
        except Exception as e:
            logging.error(f"Unexpected error in sync tick on '{self.name}': {e}. Will retry on next cycle.")
            return False
        finally:
            self.syncing = False

    def _update_face_subscription(self, source: OverlaySource):
        if self.terminated:
            return
        if source.type is OverlayType.FACE_DETECTION:
            self.tracker.start()
        else:
            self.tracker.stop()

    async def _sync_overlay(self, source: OverlaySource) -> bool:
        try:
            if source.type is OverlayType.DUPLICATE_DEVICE:
                await self.duplicate_from_device(source.device_ref)
                return True

            if source.type in (OverlayType.TEXT, OverlayType.UNKNOWN):
                # Static text is already on the device
                return True

            reading = None
            if source.type is OverlayType.DEVICE:
                reading = await self._read_telemetry(source)

            text = resolve_overlay_text(source, reading, self.tracker.last_observation)
            if not text:
                logging.warning(
                    f"Overlay {source.id} on '{self.name}' ({source.type.value}) has no text "
                    f"to show, leaving OSD unchanged"
                )
                return False

            await self._write_overlay(text, source.position)
            return True

        except ReolinkError as e:
            logging.error(
                f"Failed to sync overlay {source.id} on '{self.name}': {e}. "
                f"Will retry on next cycle."
            )
            return False
        except Exception as e:
            logging.error(
                f"Unexpected error syncing overlay {source.id} on '{self.name}': {e}. "
                f"Will retry on next cycle."
            )
            return False

    async def _read_telemetry(self, source: OverlaySource) -> Optional[TelemetryReading]:
        if not source.device_ref or self.telemetry is None:
            logging.warning(f"Overlay {source.id} on '{self.name}' has no telemetry device")
            return None
        return await self.telemetry.get_reading(source.device_ref)

    async def _write_overlay(self, text: str, position: OverlayPosition):
        doc = await self.osd.fetch()
        if self.terminated:
            return

        await self.osd.write(doc.merged(enable=True, position=position.value, name=text))
        if self.terminated:
            return

        # The channel-name overlay shows the device name
        await self.osd.write_name(text)

        content_preview = text[:30] + "..." if len(text) > 30 else text
        logging.info(f"✓ Updated overlay {self.overlay_id} on '{self.name}': \"{content_preview}\"")

    async def _refresh_name_cache(self) -> bool:
        try:
            name = await self.osd.fetch_name()
        except ReolinkError as e:
            logging.error(f"Failed to read device name of '{self.name}': {e}")
            return False

        if self.terminated:
            return False

        try:
            self.store.put_value(self.keys.text, name)
        except Exception as e:
            logging.error(f"Failed to cache device name of '{self.name}': {e}")
            return False
        return True

    async def duplicate_from_device(self, device_id: Optional[str]):
        """
        Copy another camera's OSD and overlay settings onto this camera.

        Args:
            device_id: Name of the camera to copy from

        Raises:
            ConfigError: If the camera is unknown or is this camera
            ReolinkError: If reading the peer or writing here fails
        """
        peer = self.registry.get(device_id) if device_id else None
        if peer is None or peer is self:
            raise ConfigError(f"cannot duplicate '{self.name}' from unknown device '{device_id}'")

        logging.info(f"Duplicating overlay of '{peer.name}' onto '{self.name}'")

        peer_doc = await peer.osd.fetch()
        if self.terminated:
            return
        await self.osd.write(replace(peer_doc, channel=self.osd.channel))
        await self._refresh_name_cache()
        if self.terminated:
            return

        peer_source = OverlaySource.load(peer.store, peer.overlay_id)
        self.store.put_value(self.keys.device, peer_source.device_ref)
        self.store.put_value(self.keys.type, peer_source.type.value)
        self.store.put_value(self.keys.prefix, peer_source.prefix)
        self.store.put_value(self.keys.text, peer_source.text)
        self.store.put_value(self.keys.position, peer_source.position.value)

    async def put_setting(self, key: str, value: Any):
        """Settings entry point: duplication trigger or plain store write."""
        if key == DUPLICATE_FROM_DEVICE_KEY:
            await self.duplicate_from_device(value)
        else:
            self.store.put_value(key, value)


# ============================================================================
# SyncManager Class (Daemon Loop & Signal Handling)
# ============================================================================


class SyncManager:
    """
    Builds one OverlaySyncEngine per configured camera and runs them.

    Owns the device registry, the detection event bus (hosts publish face
    detections into ``manager.detections``) and the telemetry source.
    """

    def __init__(
        self,
        config: ConfigurationRoot,
        store_factory: Optional[Callable[[str], SettingsStore]] = None,
        telemetry: Optional[TelemetrySource] = None,
        detections: Optional[DetectionEventBus] = None,
    ):
        """
        Initialize SyncManager.

        Args:
            config: Configuration root object
            store_factory: Camera name -> settings store (defaults to the
                config's JSON settings file)
            telemetry: Telemetry source (defaults to HTTP telemetry devices)
            detections: Detection event bus (a new one by default)
        """
        self.config = config
        self.running = False
        self.registry = DeviceRegistry()
        self.detections = detections or DetectionEventBus()
        self.telemetry = telemetry or HttpTelemetrySource(config.telemetry, timeout=config.timeout)

        if store_factory is None:
            store_factory = JsonSettingsFile(Path(config.settings_file)).for_device
        self._store_factory = store_factory

        self.transports: Dict[str, ReolinkTransport] = {}
        self.engines: Dict[str, OverlaySyncEngine] = {}
        for camera in config.cameras:
            self.engines[camera.name] = self._create_engine(camera)

        self._stop_event: Optional[asyncio.Event] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def _create_engine(self, camera: CameraConfig) -> OverlaySyncEngine:
        transport = ReolinkTransport(
            host=camera.host,
            port=camera.port,
            https=camera.https,
            timeout=self.config.timeout,
        )
        self.transports[camera.name] = transport

        session = SessionManager(
            transport,
            camera.username,
            camera.password,
            use_token=camera.use_token,
            keepalive_interval=self.config.keepalive_interval,
            name=camera.name,
        )

        store = self._store_factory(camera.name)
        seed_overlay_settings(store, DEFAULT_OVERLAY_ID, camera.overlay.as_settings())

        return OverlaySyncEngine(
            name=camera.name,
            session=session,
            osd=OsdRepository(session, camera.channel),
            store=store,
            registry=self.registry,
            events=self.detections,
            telemetry=self.telemetry,
            sync_interval=self.config.sync_interval,
        )

    async def run_once(self) -> dict[str, Any]:
        """
        Run a single tick on every camera concurrently.

        Returns:
            Dictionary with 'total_success', 'total_failed' and per-camera results
        """
        names = list(self.engines)
        results = await asyncio.gather(
            *(self.engines[name].run_tick() for name in names), return_exceptions=True
        )

        total_success = 0
        total_failed = 0
        camera_results = {}
        for name, result in zip(names, results):
            if isinstance(result, Exception):
                logging.error(f"Failed to sync camera '{name}': {result}")
                ok = False
            else:
                ok = bool(result)
            camera_results[name] = ok
            if ok:
                total_success += 1
            else:
                total_failed += 1

        return {
            "total_success": total_success,
            "total_failed": total_failed,
            "cameras": camera_results,
        }

    def start(self):
        for engine in self.engines.values():
            engine.start()

    async def stop(self):
        """Stop all engines, log out and close every HTTP client."""
        for engine in self.engines.values():
            await engine.stop()

        for name, engine in self.engines.items():
            await engine.session.close()
            await self.transports[name].aclose()

        if isinstance(self.telemetry, HttpTelemetrySource):
            await self.telemetry.aclose()

    def _shutdown(self, signum, frame):
        """
        Signal handler for graceful shutdown.

        Args:
            signum: Signal number
            frame: Current stack frame
        """
        signal_names = {signal.SIGINT: "SIGINT", signal.SIGTERM: "SIGTERM"}
        signal_name = signal_names.get(signum, f"signal {signum}")
        logging.info(f"Received interrupt signal ({signal_name})")
        logging.info("Shutting down gracefully...")
        self.running = False
        if self._loop is not None and self._stop_event is not None:
            self._loop.call_soon_threadsafe(self._stop_event.set)

    async def _run_async(self):
        self._loop = asyncio.get_running_loop()
        self._stop_event = asyncio.Event()
        if not self.running:
            return

        self.start()
        try:
            await self._stop_event.wait()
        finally:
            logging.info("Stopping engines and logging out...")
            await self.stop()

    def run(self):
        """
        Main sync loop - runs continuously until interrupted.
        """
        signal.signal(signal.SIGINT, self._shutdown)
        signal.signal(signal.SIGTERM, self._shutdown)

        self.running = True
        logging.info(
            f"Starting sync loop for {len(self.engines)} camera(s) "
            f"(interval: {self.config.sync_interval}s)"
        )

        try:
            asyncio.run(self._run_async())
        except KeyboardInterrupt:
            logging.info("Received interrupt during async loop")
        finally:
            logging.info("Sync loop stopped. Goodbye!")


async def run_single_cycle(config: ConfigurationRoot) -> dict[str, Any]:
    manager = SyncManager(config)
    try:
        return await manager.run_once()
    finally:
        await manager.stop()


# ============================================================================
# Main Entry Point (CLI Implementation)
# ============================================================================


def main():
    """Main entry point for CLI usage."""
    parser = argparse.ArgumentParser(
        description="Reolink Overlay Sync Manager - Keep camera OSD text in sync with\n"
        "static text, telemetry or face detections.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  overlay_sync_manager.py config.json             Start daemon with config
  overlay_sync_manager.py --validate config.json  Validate configuration
  overlay_sync_manager.py --once config.json      Run single sync cycle

Configuration:
  See config.example.json for configuration format and options.

Signals:
  SIGINT/SIGTERM - Graceful shutdown (stops timers and logs out)
        """,
    )

    parser.add_argument(
        "-v",
        "--validate",
        action="store_true",
        help="Validate configuration and exit (don't start daemon)",
    )

    parser.add_argument(
        "-V", "--version", action="store_true", help="Show version and exit"
    )

    parser.add_argument(
        "-1",
        "--once",
        action="store_true",
        help="Run sync once and exit (no daemon mode)",
    )

    parser.add_argument(
        "config_file",
        metavar="CONFIG_FILE",
        type=str,
        nargs="?",
        help="Path to JSON configuration file",
    )

    args = parser.parse_args()

    if args.version:
        print(f"Reolink Overlay Sync Manager v{VERSION}")
        print(f"Python {sys.version.split()[0]}")
        return 0

    if not args.config_file:
        parser.error("CONFIG_FILE is required (unless using --version)")
        return 1

    config_path = Path(args.config_file)

    if not config_path.exists():
        print(f"✗ Configuration file not found: {config_path}", file=sys.stderr)
        print(
            "  See config.example.json for an example configuration.", file=sys.stderr
        )
        return 1

    try:
        config = load_config(config_path)
    except json.JSONDecodeError as e:
        print("✗ Configuration file has invalid JSON syntax:", file=sys.stderr)
        print(f"  {e}", file=sys.stderr)
        print(f"  Line {e.lineno}, Column {e.colno}", file=sys.stderr)
        return 1
    except KeyError as e:
        print("✗ Configuration file is missing required field:", file=sys.stderr)
        print(f"  {e}", file=sys.stderr)
        return 1
    except Exception as e:
        print("✗ Error loading configuration file:", file=sys.stderr)
        print(f"  {e}", file=sys.stderr)
        return 1

    is_valid, errors = validate_config(config)

    if args.validate:
        print(f"Validating configuration file: {config_path}")
        if is_valid:
            print("✓ Configuration is valid")
            print(
                f"  - {len(config.cameras)} camera{'s' if len(config.cameras) != 1 else ''} configured"
            )
            print(f"  - {len(config.telemetry)} telemetry device(s)")
            print(f"  - Sync interval: {config.sync_interval} seconds")
            return 0
        else:
            print("✗ Configuration is invalid:")
            for error in errors:
                print(f"  - {error}")
            return 1

    if not is_valid:
        print("✗ Configuration is invalid:", file=sys.stderr)
        for error in errors:
            print(f"  - {error}", file=sys.stderr)
        print(
            "\nRun with --validate flag to see detailed validation results.",
            file=sys.stderr,
        )
        return 1

    setup_logging(config.log_level)
    logging.info(f"Starting Reolink Overlay Sync Manager v{VERSION}")
    logging.info(
        f"Loaded configuration: {len(config.cameras)} camera(s), "
        f"sync every {config.sync_interval}s"
    )

    reachable, total = probe_all_cameras(config)
    if reachable == 0:
        logging.error(
            f"All {total} camera(s) are unreachable. "
            f"Check network connectivity, camera addresses, and credentials."
        )
        return 2
    elif reachable < total:
        logging.warning(
            f"Only {reachable}/{total} camera(s) are reachable. "
            f"Sync manager will start but some cameras may be offline."
        )
    else:
        logging.info(f"All {total} camera(s) are reachable.")

    if args.once:
        logging.info("One-shot mode: running single sync cycle")
        start_time = time.time()

        results = asyncio.run(run_single_cycle(config))

        duration = time.time() - start_time
        logging.info(
            f"Sync cycle completed in {duration:.1f}s. "
            f"Success: {results['total_success']}, Failed: {results['total_failed']}"
        )
        return 0 if results["total_failed"] == 0 else 1

    manager = SyncManager(config)
    manager.run()

    return 0


if __name__ == "__main__":
    sys.exit(main())
