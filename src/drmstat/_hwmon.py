"""hwmon sensor discovery and reads for a DRM device."""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass

logger = logging.getLogger("drmstat.hwmon")

_SENSOR_RE = re.compile(r"^([a-z]+)(\d+)_([a-z_]+)$")


@dataclass(frozen=True)
class Sensor:
    """One hwmon channel, e.g. ``temp1`` labelled ``edge``.

    ``label`` is empty when the channel has no ``_label`` file.
    """

    stype: str
    index: int
    label: str
    items: frozenset[str]

    @property
    def name(self) -> str:
        return f"{self.stype}{self.index}"

    @property
    def display(self) -> str:
        return self.label or self.name


class Hwmon:
    """The first ``hwmon/hwmonN`` directory under a device."""

    def __init__(self, path: str) -> None:
        self.path = path
        self.sensors = self._scan()

    @classmethod
    def from_device(cls, sysfs_path: str) -> Hwmon | None:
        base = os.path.join(sysfs_path, "hwmon")
        try:
            entries = sorted(e for e in os.listdir(base) if e.startswith("hwmon"))
        except OSError:
            return None
        if not entries:
            return None
        return cls(os.path.join(base, entries[0]))

    def _scan(self) -> list[Sensor]:
        found: dict[tuple[str, int], set[str]] = {}
        for entry in os.listdir(self.path):
            m = _SENSOR_RE.match(entry)
            if m is None:
                continue
            key = (m.group(1), int(m.group(2)))
            found.setdefault(key, set()).add(m.group(3))

        sensors: list[Sensor] = []
        for (stype, index), items in found.items():
            label = ""
            if "label" in items:
                try:
                    with open(os.path.join(self.path, f"{stype}{index}_label")) as f:
                        label = f.read().strip()
                except OSError:
                    pass
            sensors.append(Sensor(stype, index, label, frozenset(items)))
        sensors.sort(key=lambda s: s.display)
        return sensors

    def of_type(self, stype: str, item: str = "input") -> list[Sensor]:
        return [s for s in self.sensors if s.stype == stype and item in s.items]

    def read(self, sensor: Sensor, item: str) -> int:
        """Raw integer value of ``<sensor>_<item>``. Raises OSError/ValueError."""
        with open(os.path.join(self.path, f"{sensor.name}_{item}")) as f:
            return int(f.read().strip())

    def temps(self) -> dict[str, float]:
        """Temperatures in degrees Celsius, keyed by label."""
        out: dict[str, float] = {}
        for sensor in self.of_type("temp"):
            try:
                out[sensor.display] = self.read(sensor, "input") / 1000.0
            except (OSError, ValueError):
                logger.debug("Skipping %s/%s", self.path, sensor.name, exc_info=True)
        return out

    def fans(self) -> dict[str, int]:
        """Fan speeds in RPM, keyed by label."""
        out: dict[str, int] = {}
        for sensor in self.of_type("fan"):
            try:
                out[sensor.display] = self.read(sensor, "input")
            except (OSError, ValueError):
                logger.debug("Skipping %s/%s", self.path, sensor.name, exc_info=True)
        return out
