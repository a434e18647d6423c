"""
Overlay sources

Everything that decides *what* text an overlay shows: the per-overlay
settings, the stores they live in, telemetry readings, face detections and
the resolver that turns them into the final display string.
"""

import json
import logging
import math
import os
import tempfile
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import httpx

DEFAULT_OVERLAY_ID = "DevName"
NO_FACE_PLACEHOLDER = "-"
FACE_CLASS_NAME = "face"


# ============================================================================
# Overlay source model
# ============================================================================


class OverlayType(Enum):
    TEXT = "Text"
    DEVICE = "Device"
    FACE_DETECTION = "FaceDetection"
    DUPLICATE_DEVICE = "DuplicateDevice"
    UNKNOWN = "Unknown"

    @classmethod
    def parse(cls, value: Optional[str]) -> "OverlayType":
        for member in cls:
            if member.value == value:
                return member
        return cls.UNKNOWN


class OverlayPosition(Enum):
    UPPER_LEFT = "Upper Left"
    TOP_CENTER = "Top Center"
    UPPER_RIGHT = "Upper Right"
    LOWER_LEFT = "Lower Left"
    BOTTOM_CENTER = "Bottom Center"
    LOWER_RIGHT = "Lower Right"
    OTHER = "Other Configuration"

    @classmethod
    def parse(cls, value: Optional[str]) -> "OverlayPosition":
        for member in cls:
            if member.value == value:
                return member
        return cls.LOWER_LEFT


@dataclass(frozen=True)
class OverlayKeys:
    """Settings store keys of one overlay."""

    device: str
    type: str
    prefix: str
    text: str
    position: str

    @classmethod
    def for_overlay(cls, overlay_id: str) -> "OverlayKeys":
        return cls(
            device=f"{overlay_id}_device",
            type=f"{overlay_id}_type",
            prefix=f"{overlay_id}_prefix",
            text=f"{overlay_id}_text",
            position=f"{overlay_id}_position",
        )

    def all(self) -> List[str]:
        return [self.device, self.type, self.prefix, self.text, self.position]


@dataclass(frozen=True)
class OverlaySource:
    """
    A configured overlay: where its text comes from and where it is shown.

    Attributes:
        id: Overlay ID (the OSD slot, "DevName" on these cameras)
        type: Which source feeds the text
        device_ref: Telemetry device or peer camera (Device / DuplicateDevice)
        prefix: Prepended to generated text
        text: Static text, also the cached device name
        position: OSD position
    """

    id: str
    type: OverlayType
    device_ref: Optional[str] = None
    prefix: str = ""
    text: str = ""
    position: OverlayPosition = OverlayPosition.LOWER_LEFT

    @classmethod
    def load(cls, store: "SettingsStore", overlay_id: str = DEFAULT_OVERLAY_ID) -> "OverlaySource":
        """Read an overlay from the settings store (never cached)."""
        keys = OverlayKeys.for_overlay(overlay_id)
        return cls(
            id=overlay_id,
            type=OverlayType.parse(store.get_value(keys.type)),
            device_ref=store.get_value(keys.device) or None,
            prefix=store.get_value(keys.prefix) or "",
            text=store.get_value(keys.text) or "",
            position=OverlayPosition.parse(store.get_value(keys.position)),
        )


# ============================================================================
# Settings stores
# ============================================================================


class SettingsStore:
    """Key-value store interface the engine reads overlay settings from."""

    def get_value(self, key: str) -> Optional[str]:
        raise NotImplementedError

    def put_value(self, key: str, value: Optional[str]) -> None:
        raise NotImplementedError

    def keys(self) -> List[str]:
        raise NotImplementedError


def _as_setting(value: Any) -> Optional[str]:
    if value is None or isinstance(value, str):
        return value
    return json.dumps(value)


class MemorySettingsStore(SettingsStore):
    def __init__(self, values: Optional[Dict[str, str]] = None):
        self._values: Dict[str, str] = dict(values or {})

    def get_value(self, key: str) -> Optional[str]:
        return self._values.get(key)

    def put_value(self, key: str, value: Optional[str]) -> None:
        if value is None:
            self._values.pop(key, None)
        else:
            self._values[key] = _as_setting(value)

    def keys(self) -> List[str]:
        return list(self._values)


class JsonSettingsFile:
    """
    JSON file holding the settings of every camera, one object per camera.

    The whole file is rewritten on each change through a temporary file and
    os.replace(), so a crash never leaves it half written.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self._data: Dict[str, Dict[str, str]] = {}
        if self.path.exists():
            with open(self.path, "r", encoding="utf-8") as f:
                self._data = json.load(f)

    def for_device(self, device_name: str) -> "DeviceSettings":
        return DeviceSettings(self, device_name)

    def get(self, device_name: str, key: str) -> Optional[str]:
        return self._data.get(device_name, {}).get(key)

    def put(self, device_name: str, key: str, value: Optional[str]) -> None:
        section = self._data.setdefault(device_name, {})
        if value is None:
            if key not in section:
                return
            del section[key]
        else:
            value = _as_setting(value)
            if section.get(key) == value:
                return
            section[key] = value
        self._save()

    def device_keys(self, device_name: str) -> List[str]:
        return list(self._data.get(device_name, {}))

    def _save(self):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.name}.")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(self._data, f, indent=2, sort_keys=True)
            os.replace(tmp_path, self.path)
        except OSError:
            Path(tmp_path).unlink(missing_ok=True)
            raise


class DeviceSettings(SettingsStore):
    """One camera's view of a JsonSettingsFile."""

    def __init__(self, settings_file: JsonSettingsFile, device_name: str):
        self.settings_file = settings_file
        self.device_name = device_name

    def get_value(self, key: str) -> Optional[str]:
        return self.settings_file.get(self.device_name, key)

    def put_value(self, key: str, value: Optional[str]) -> None:
        self.settings_file.put(self.device_name, key, value)

    def keys(self) -> List[str]:
        return self.settings_file.device_keys(self.device_name)


def seed_overlay_settings(store: SettingsStore, overlay_id: str, initial: Dict[str, Optional[str]]) -> None:
    """
    Write initial overlay settings for keys the store does not hold yet.

    Args:
        store: Target settings store
        overlay_id: Overlay ID
        initial: Values keyed by "device", "type", "prefix", "text", "position"
    """
    keys = OverlayKeys.for_overlay(overlay_id)
    existing = set(store.keys())
    for field_name in ("device", "type", "prefix", "text", "position"):
        key = getattr(keys, field_name)
        value = initial.get(field_name)
        if key not in existing and value is not None:
            store.put_value(key, value)


# ============================================================================
# Telemetry
# ============================================================================


@dataclass(frozen=True)
class TelemetryReading:
    temperature: Optional[float] = None
    unit: str = "C"
    humidity: Optional[float] = None


class TelemetrySource:
    async def get_reading(self, device_ref: str) -> Optional[TelemetryReading]:
        raise NotImplementedError


class HttpTelemetrySource(TelemetrySource):
    """
    Telemetry devices exposed as JSON documents over HTTP.

    Each device URL must answer with an object holding ``temperature`` and
    ``unit`` and/or ``humidity``.
    """

    def __init__(self, urls: Dict[str, str], timeout: float = 10.0, client: Optional[httpx.AsyncClient] = None):
        self.urls = dict(urls)
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(verify=False, timeout=self.timeout)
        return self._client

    async def get_reading(self, device_ref: str) -> Optional[TelemetryReading]:
        url = self.urls.get(device_ref)
        if url is None:
            logging.warning(f"Telemetry device '{device_ref}' is not configured")
            return None

        try:
            response = await self._get_client().get(url, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logging.error(f"Failed to read telemetry device '{device_ref}': {e}")
            return None

        if not isinstance(data, dict):
            logging.error(f"Telemetry device '{device_ref}' returned unexpected data: {data!r}")
            return None

        return TelemetryReading(
            temperature=_optional_float(data.get("temperature")),
            unit=str(data.get("unit") or "C"),
            humidity=_optional_float(data.get("humidity")),
        )

    async def aclose(self):
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None


def _optional_float(value: Any) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


# ============================================================================
# Detection events & face tracking
# ============================================================================


@dataclass(frozen=True)
class Detection:
    class_name: str
    label: Optional[str] = None


@dataclass(frozen=True)
class FaceObservation:
    label: str
    observed_at: float


DetectionCallback = Callable[[List[Detection]], None]


class DetectionSubscription:
    def __init__(self, bus: "DetectionEventBus", device_id: str, callback: DetectionCallback):
        self._bus = bus
        self.device_id = device_id
        self.callback = callback
        self.active = True

    def remove(self):
        if self.active:
            self._bus._remove(self)
            self.active = False


class DetectionEventBus:
    """In-process fan-out of object detection batches, keyed by camera."""

    def __init__(self):
        self._subscribers: Dict[str, List[DetectionSubscription]] = {}

    def subscribe(self, device_id: str, callback: DetectionCallback) -> DetectionSubscription:
        subscription = DetectionSubscription(self, device_id, callback)
        self._subscribers.setdefault(device_id, []).append(subscription)
        return subscription

    def publish(self, device_id: str, detections: List[Detection]) -> None:
        for subscription in list(self._subscribers.get(device_id, [])):
            try:
                subscription.callback(detections)
            except Exception as e:
                logging.error(f"Detection handler for '{device_id}' failed: {e}")

    def subscriber_count(self, device_id: str) -> int:
        return len(self._subscribers.get(device_id, []))

    def _remove(self, subscription: DetectionSubscription):
        subscribers = self._subscribers.get(subscription.device_id, [])
        if subscription in subscribers:
            subscribers.remove(subscription)
        if not subscribers:
            self._subscribers.pop(subscription.device_id, None)


class FaceDetectionTracker:
    """
    Keeps the most recently detected face label for one camera.

    Single-slot mailbox: the subscription callback overwrites it, the sync
    tick reads it. Only one subscription is open at a time.
    """

    def __init__(self, events: DetectionEventBus, device_id: str, clock: Callable[[], float] = time.time):
        self.events = events
        self.device_id = device_id
        self._clock = clock
        self._subscription: Optional[DetectionSubscription] = None
        self._last: Optional[FaceObservation] = None

    @property
    def last_observation(self) -> Optional[FaceObservation]:
        return self._last

    @property
    def subscribed(self) -> bool:
        return self._subscription is not None

    def start(self):
        if self._subscription is None:
            self._subscription = self.events.subscribe(self.device_id, self.on_detections)
            logging.debug(f"Listening for face detections on '{self.device_id}'")

    def stop(self):
        if self._subscription is not None:
            self._subscription.remove()
            self._subscription = None
            logging.debug(f"Stopped listening for face detections on '{self.device_id}'")

    def on_detections(self, detections: List[Detection]):
        for detection in detections:
            if detection.class_name == FACE_CLASS_NAME and detection.label:
                self._last = FaceObservation(label=detection.label, observed_at=self._clock())
                return


# ============================================================================
# Resolver
# ============================================================================


def format_number(value: float) -> str:
    """Clamp to >= 0 and round half up to a whole number."""
    if value < 0:
        value = 0
    return str(int(math.floor(value + 0.5)))


def resolve_overlay_text(
    source: OverlaySource,
    reading: Optional[TelemetryReading] = None,
    last_face: Optional[FaceObservation] = None,
) -> Optional[str]:
    """
    Compute the text an overlay should display.

    Args:
        source: Overlay configuration
        reading: Telemetry of source.device_ref (Device type only)
        last_face: Latest face observation (FaceDetection type only)

    Returns:
        The display string; "" when the configured source has nothing to
        offer; None when this type produces no per-tick text
    """
    if source.type is OverlayType.TEXT:
        return source.text or ""

    if source.type is OverlayType.DEVICE:
        if reading is None:
            return ""
        if reading.temperature is not None:
            return f"{source.prefix}{format_number(reading.temperature)} {reading.unit}"
        if reading.humidity is not None:
            return f"{source.prefix}{format_number(reading.humidity)} %"
        return ""

    if source.type is OverlayType.FACE_DETECTION:
        label = last_face.label if last_face is not None else NO_FACE_PLACEHOLDER
        return f"{source.prefix}{label}"

    if source.type is OverlayType.DUPLICATE_DEVICE:
        return None

    if source.type is OverlayType.UNKNOWN:
        return None

    raise AssertionError(f"unhandled overlay type {source.type}")
