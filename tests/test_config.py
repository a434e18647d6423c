"""Tests for configuration loading, validation and SyncManager wiring."""

import json
from pathlib import Path

import pytest

from overlay_sources import MemorySettingsStore
from overlay_sync_manager import (
    CameraConfig,
    ConfigurationRoot,
    OverlayConfig,
    SyncManager,
    load_config,
    validate_config,
)


def write_config(tmp_path: Path, data: dict) -> Path:
    path = tmp_path / "config.json"
    path.write_text(json.dumps(data))
    return path


def camera(name="front", **overlay):
    return CameraConfig(
        name=name,
        host="192.168.1.20",
        username="admin",
        password="secret",
        overlay=OverlayConfig(**overlay),
    )


@pytest.fixture
def minimal_data():
    return {
        "sync_interval": 10,
        "cameras": [
            {
                "name": "front",
                "host": "192.168.1.20",
                "username": "admin",
                "password": "secret",
                "overlay": {"type": "Device", "device": "thermo", "prefix": "T: "},
            }
        ],
        "telemetry": {"thermo": {"url": "http://10.0.0.5/state.json"}},
    }


class TestLoadConfig:
    def test_defaults(self, tmp_path, minimal_data):
        config = load_config(write_config(tmp_path, minimal_data))

        assert config.timeout == 10
        assert config.keepalive_interval == 300
        assert config.log_level == "INFO"
        assert config.settings_file == str(tmp_path / "overlay_settings.json")
        assert config.telemetry == {"thermo": "http://10.0.0.5/state.json"}

        cam = config.cameras[0]
        assert (cam.port, cam.https, cam.channel, cam.use_token) == (80, False, 0, True)
        assert cam.overlay == OverlayConfig(type="Device", device="thermo", prefix="T: ")

    def test_https_defaults_to_port_443(self, tmp_path, minimal_data):
        minimal_data["cameras"][0]["https"] = True

        assert load_config(write_config(tmp_path, minimal_data)).cameras[0].port == 443

    def test_missing_required_field(self, tmp_path, minimal_data):
        del minimal_data["cameras"][0]["host"]

        with pytest.raises(KeyError):
            load_config(write_config(tmp_path, minimal_data))

    def test_example_config_is_valid(self):
        example = Path(__file__).parent.parent / "config.example.json"

        is_valid, errors = validate_config(load_config(example))

        assert is_valid, errors


class TestValidateConfig:
    def test_valid(self):
        config = ConfigurationRoot(sync_interval=10, cameras=[camera()])
        assert validate_config(config) == (True, [])

    def test_rejects_bad_numbers_and_duplicates(self):
        config = ConfigurationRoot(
            sync_interval=0,
            timeout=-1,
            keepalive_interval=0,
            log_level="LOUD",
            cameras=[camera(), camera()],
        )

        is_valid, errors = validate_config(config)

        assert not is_valid
        joined = "\n".join(errors)
        for fragment in ("sync_interval", "timeout", "keepalive_interval", "log_level", "Duplicate camera"):
            assert fragment in joined

    def test_rejects_unknown_type_and_position(self):
        config = ConfigurationRoot(
            sync_interval=10, cameras=[camera(type="Weather", position="Middle")]
        )

        is_valid, errors = validate_config(config)

        assert not is_valid
        assert any("overlay type" in e for e in errors)
        assert any("overlay position" in e for e in errors)

    def test_device_overlay_needs_configured_telemetry(self):
        config = ConfigurationRoot(sync_interval=10, cameras=[camera(type="Device", device="thermo")])

        is_valid, errors = validate_config(config)

        assert not is_valid
        assert "thermo" in errors[0]

        config.telemetry = {"thermo": "http://10.0.0.5/state.json"}
        assert validate_config(config)[0]

    def test_duplicate_overlay_needs_other_camera(self):
        config = ConfigurationRoot(
            sync_interval=10,
            cameras=[camera("a", type="DuplicateDevice", device="a"), camera("b")],
        )
        assert not validate_config(config)[0]

        config.cameras[0].overlay.device = "b"
        assert validate_config(config)[0]


class TestSyncManager:
    def test_builds_and_registers_one_engine_per_camera(self):
        stores = {}

        def store_factory(name):
            return stores.setdefault(name, MemorySettingsStore())

        config = ConfigurationRoot(
            sync_interval=5,
            cameras=[camera("a", type="FaceDetection", prefix="Seen: "), camera("b")],
        )

        manager = SyncManager(config, store_factory=store_factory)

        assert sorted(manager.registry.names()) == ["a", "b"]
        assert manager.engines["a"].sync_interval == 5
        assert stores["a"].get_value("DevName_type") == "FaceDetection"
        assert stores["a"].get_value("DevName_prefix") == "Seen: "
        assert stores["b"].get_value("DevName_type") == "Text"
        assert manager.transports["a"].url == "http://192.168.1.20:80/cgi-bin/api.cgi"

    @pytest.mark.asyncio
    async def test_run_once_counts_results_and_stop_cleans_up(self):
        config = ConfigurationRoot(sync_interval=5, cameras=[camera("a"), camera("b")])
        manager = SyncManager(config, store_factory=lambda name: MemorySettingsStore())

        async def ok():
            return True

        async def fail():
            return False

        manager.engines["a"].run_tick = ok
        manager.engines["b"].run_tick = fail

        results = await manager.run_once()
        await manager.stop()

        assert results["total_success"] == 1
        assert results["total_failed"] == 1
        assert results["cameras"] == {"a": True, "b": False}
        assert manager.registry.names() == []
