"""Tests for overlay settings, stores, telemetry, face tracking and the resolver."""

import json

import httpx
import pytest

from overlay_sources import (
    Detection,
    DetectionEventBus,
    FaceDetectionTracker,
    FaceObservation,
    HttpTelemetrySource,
    JsonSettingsFile,
    MemorySettingsStore,
    OverlayPosition,
    OverlaySource,
    OverlayType,
    TelemetryReading,
    format_number,
    resolve_overlay_text,
    seed_overlay_settings,
)


def make_source(type_, prefix="", text="", device_ref=None):
    return OverlaySource(id="DevName", type=type_, device_ref=device_ref, prefix=prefix, text=text)


class TestFormatNumber:
    @pytest.mark.parametrize(
        "value, expected",
        [(21.6, "22"), (21.4, "21"), (2.5, "3"), (0, "0"), (-3.2, "0"), (55.0, "55")],
    )
    def test_clamps_and_rounds_half_up(self, value, expected):
        assert format_number(value) == expected


class TestResolver:
    def test_text_returns_stored_text(self):
        assert resolve_overlay_text(make_source(OverlayType.TEXT, text="Front Door")) == "Front Door"

    def test_temperature_rounds_to_nearest(self):
        reading = TelemetryReading(temperature=21.6, unit="C")
        assert resolve_overlay_text(make_source(OverlayType.DEVICE), reading) == "22 C"

    def test_temperature_with_prefix(self):
        reading = TelemetryReading(temperature=-3.2, unit="F")
        source = make_source(OverlayType.DEVICE, prefix="Temp: ")
        assert resolve_overlay_text(source, reading) == "Temp: 0 F"

    def test_humidity_when_no_temperature(self):
        reading = TelemetryReading(humidity=48.7)
        source = make_source(OverlayType.DEVICE, prefix="RH ")
        assert resolve_overlay_text(source, reading) == "RH 49 %"

    def test_device_without_reading_or_capability_is_empty(self):
        source = make_source(OverlayType.DEVICE, prefix="Temp: ")
        assert resolve_overlay_text(source, None) == ""
        assert resolve_overlay_text(source, TelemetryReading()) == ""

    def test_face_detection_placeholder(self):
        assert resolve_overlay_text(make_source(OverlayType.FACE_DETECTION)) == "-"
        assert resolve_overlay_text(make_source(OverlayType.FACE_DETECTION, prefix="Seen: ")) == "Seen: -"

    def test_face_detection_label(self):
        face = FaceObservation(label="Alice", observed_at=1.0)
        source = make_source(OverlayType.FACE_DETECTION, prefix="Seen: ")
        assert resolve_overlay_text(source, last_face=face) == "Seen: Alice"

    @pytest.mark.parametrize("type_", [OverlayType.DUPLICATE_DEVICE, OverlayType.UNKNOWN])
    def test_types_without_per_tick_text(self, type_):
        assert resolve_overlay_text(make_source(type_, text="ignored")) is None


class TestOverlaySource:
    def test_load_reads_all_keys(self):
        store = MemorySettingsStore({
            "DevName_type": "Device",
            "DevName_device": "thermometer",
            "DevName_prefix": "Temp: ",
            "DevName_text": "Front Door",
            "DevName_position": "Upper Right",
        })

        source = OverlaySource.load(store)

        assert source == OverlaySource(
            id="DevName",
            type=OverlayType.DEVICE,
            device_ref="thermometer",
            prefix="Temp: ",
            text="Front Door",
            position=OverlayPosition.UPPER_RIGHT,
        )

    def test_load_defaults(self):
        source = OverlaySource.load(MemorySettingsStore({"DevName_type": "Bogus"}))

        assert source.type is OverlayType.UNKNOWN
        assert source.device_ref is None
        assert source.prefix == ""
        assert source.position is OverlayPosition.LOWER_LEFT

    def test_other_position(self):
        store = MemorySettingsStore({"DevName_position": "Other Configuration"})
        assert OverlaySource.load(store).position is OverlayPosition.OTHER


class TestSettingsStores:
    def test_seed_only_fills_missing_keys(self):
        store = MemorySettingsStore({"DevName_type": "Text"})

        seed_overlay_settings(store, "DevName", {"type": "Device", "prefix": "T: ", "device": None})

        assert store.get_value("DevName_type") == "Text"
        assert store.get_value("DevName_prefix") == "T: "
        assert store.get_value("DevName_device") is None

    def test_memory_store_delete_on_none(self):
        store = MemorySettingsStore({"a": "1"})
        store.put_value("a", None)
        assert store.keys() == []

    def test_json_file_persists_per_device(self, tmp_path):
        path = tmp_path / "settings.json"
        settings = JsonSettingsFile(path)
        front = settings.for_device("front")
        back = settings.for_device("back")

        front.put_value("DevName_text", "Front Door")
        back.put_value("DevName_text", "Back Yard")

        reloaded = JsonSettingsFile(path)
        assert reloaded.for_device("front").get_value("DevName_text") == "Front Door"
        assert reloaded.for_device("back").keys() == ["DevName_text"]
        assert json.loads(path.read_text()) == {
            "back": {"DevName_text": "Back Yard"},
            "front": {"DevName_text": "Front Door"},
        }

    def test_json_file_skips_unchanged_writes(self, tmp_path):
        path = tmp_path / "settings.json"
        store = JsonSettingsFile(path).for_device("front")
        store.put_value("k", "v")

        # Rewritten behind its back; an unchanged put must not clobber it
        path.write_text(json.dumps({"front": {"k": "v"}, "marker": {}}))
        store.put_value("k", "v")

        assert "marker" in json.loads(path.read_text())


class TestFaceDetectionTracker:
    def test_first_qualifying_face_wins(self):
        bus = DetectionEventBus()
        tracker = FaceDetectionTracker(bus, "front", clock=lambda: 42.0)
        tracker.start()

        bus.publish("front", [
            Detection("person", "Bob"),
            Detection("face", ""),
            Detection("face", "Alice"),
            Detection("face", "Carol"),
        ])

        assert tracker.last_observation == FaceObservation(label="Alice", observed_at=42.0)

    def test_batch_without_face_keeps_last_value(self):
        bus = DetectionEventBus()
        tracker = FaceDetectionTracker(bus, "front")
        tracker.start()
        bus.publish("front", [Detection("face", "Alice")])

        bus.publish("front", [Detection("car", "ABC123")])

        assert tracker.last_observation.label == "Alice"

    def test_start_stop_idempotent(self):
        bus = DetectionEventBus()
        tracker = FaceDetectionTracker(bus, "front")

        tracker.start()
        tracker.start()
        assert bus.subscriber_count("front") == 1

        tracker.stop()
        tracker.stop()
        assert bus.subscriber_count("front") == 0
        assert not tracker.subscribed

    def test_ignores_other_devices_and_stopped_state(self):
        bus = DetectionEventBus()
        tracker = FaceDetectionTracker(bus, "front")
        tracker.start()

        bus.publish("back", [Detection("face", "Mallory")])
        tracker.stop()
        bus.publish("front", [Detection("face", "Eve")])

        assert tracker.last_observation is None


class TestHttpTelemetrySource:
    @pytest.mark.asyncio
    async def test_reads_temperature_document(self):
        def handler(request):
            assert request.url.path == "/state.json"
            return httpx.Response(200, json={"temperature": "21.6", "unit": "C"})

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        source = HttpTelemetrySource({"thermo": "http://10.0.0.5/state.json"}, client=client)

        reading = await source.get_reading("thermo")

        assert reading == TelemetryReading(temperature=21.6, unit="C", humidity=None)

    @pytest.mark.asyncio
    async def test_unknown_device_and_failures_give_no_reading(self):
        def handler(request):
            return httpx.Response(500)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        source = HttpTelemetrySource({"thermo": "http://10.0.0.5/state.json"}, client=client)

        assert await source.get_reading("missing") is None
        assert await source.get_reading("thermo") is None
