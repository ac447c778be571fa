"""Tests for _hwmon module."""

from pathlib import Path

from drmstat._hwmon import Hwmon


def _make_hwmon(device_dir: Path) -> Path:
    path = device_dir / "hwmon" / "hwmon3"
    path.mkdir(parents=True)
    (path / "name").write_text("xe\n")
    (path / "temp1_input").write_text("45000\n")
    (path / "temp1_label").write_text("pkg\n")
    (path / "temp2_input").write_text("51500\n")
    (path / "temp2_label").write_text("vram\n")
    (path / "temp3_input").write_text("garbage\n")
    (path / "fan1_input").write_text("1200\n")
    (path / "power1_input").write_text("35000000\n")
    (path / "power1_label").write_text("pkg\n")
    (path / "power2_max").write_text("200000000\n")
    (path / "power2_label").write_text("card\n")
    return path


class TestHwmon:
    def test_from_device(self, tmp_path: Path) -> None:
        path = _make_hwmon(tmp_path)
        hwmon = Hwmon.from_device(str(tmp_path))
        assert hwmon is not None
        assert hwmon.path == str(path)

    def test_from_device_without_hwmon(self, tmp_path: Path) -> None:
        assert Hwmon.from_device(str(tmp_path)) is None

    def test_sensor_scan(self, tmp_path: Path) -> None:
        hwmon = Hwmon(str(_make_hwmon(tmp_path)))
        names = {s.name for s in hwmon.sensors}
        assert names == {"temp1", "temp2", "temp3", "fan1", "power1", "power2"}
        [power1] = hwmon.of_type("power")
        assert power1.label == "pkg"
        assert power1.items == frozenset({"input", "label"})
        # power2 has no _input
        assert [s.label for s in hwmon.of_type("power", "max")] == ["card"]

    def test_temps_in_celsius_by_label(self, tmp_path: Path) -> None:
        hwmon = Hwmon(str(_make_hwmon(tmp_path)))
        assert hwmon.temps() == {"pkg": 45.0, "vram": 51.5}

    def test_fans_fall_back_to_channel_name(self, tmp_path: Path) -> None:
        hwmon = Hwmon(str(_make_hwmon(tmp_path)))
        assert hwmon.fans() == {"fan1": 1200}

    def test_read_raw(self, tmp_path: Path) -> None:
        hwmon = Hwmon(str(_make_hwmon(tmp_path)))
        [sensor] = hwmon.of_type("power")
        assert hwmon.read(sensor, "input") == 35_000_000
