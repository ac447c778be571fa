"""Tests for fdinfo parsing and the /proc scanner."""

import os
from pathlib import Path

import pytest

from drmstat import _fdinfo
from drmstat._fdinfo import FdinfoScanner, parse_fdinfo

XE_FDINFO = """\
pos:\t0
flags:\t02100002
mnt_id:\t26
ino:\t1132
drm-driver:\txe
drm-client-id:\t42
drm-pdev:\t0000:03:00.0
drm-total-system:\t8 KiB
drm-shared-system:\t0
drm-active-system:\t0
drm-resident-system:\t8 KiB
drm-purgeable-system:\t0
drm-total-vram0:\t24 MiB
drm-resident-vram0:\t20 MiB
drm-cycles-rcs:\t28257900
drm-total-cycles-rcs:\t7655183225
drm-cycles-bcs:\t0
drm-total-cycles-bcs:\t7655183225
drm-engine-capacity-vcs:\t2
drm-cycles-vcs:\t10
drm-total-cycles-vcs:\t7655183225
"""

I915_FDINFO = """\
drm-driver:\ti915
drm-pdev:\t0000:00:02.0
drm-client-id:\t7
drm-engine-render:\t9288864723 ns
drm-engine-copy:\t0 ns
drm-memory-system:\t4 MiB
"""


def _stat_line(pid: int, comm: str) -> str:
    return f"{pid} ({comm}) S 1 1 1 0 -1 0 0 0 0 0 30 10 0 0 20 0 2 0 1 1 1\n"


def _make_proc(root: Path, pid: int, fds: dict[str, str]) -> None:
    base = root / str(pid)
    (base / "fd").mkdir(parents=True)
    (base / "fdinfo").mkdir()
    (base / "stat").write_text(_stat_line(pid, f"proc{pid}"))
    (base / "cmdline").write_bytes(f"proc{pid}\0".encode())
    for fd, text in fds.items():
        (base / "fd" / fd).write_text("")
        (base / "fdinfo" / fd).write_text(text)


class TestParseFdinfo:
    def test_cycle_based_engines(self) -> None:
        info = parse_fdinfo(XE_FDINFO, 128)
        assert info.client_id == 42
        assert info.pdev == "0000:03:00.0"
        assert info.driver == "xe"
        assert info.minor == 128
        rcs = info.engines["rcs"]
        assert rcs.cycles == 28257900
        assert rcs.total_cycles == 7655183225
        assert rcs.time_ns is None
        assert info.engines["vcs"].capacity == 2

    def test_memory_regions(self) -> None:
        info = parse_fdinfo(XE_FDINFO, 128)
        assert info.mem_regions["system"].total == 8 * 1024
        assert info.mem_regions["system"].resident == 8 * 1024
        assert info.mem_regions["vram0"].total == 24 * 1024 * 1024
        assert info.mem_regions["vram0"].resident == 20 * 1024 * 1024

    def test_time_based_engines_and_legacy_memory(self) -> None:
        info = parse_fdinfo(I915_FDINFO, 0)
        assert info.engines["render"].time_ns == 9288864723
        assert info.engines["render"].cycles is None
        assert info.engines["copy"].time_ns == 0
        system = info.mem_regions["system"]
        assert system.resident == 4 * 1024 * 1024
        assert system.total == system.resident

    def test_not_drm(self) -> None:
        with pytest.raises(ValueError):
            parse_fdinfo("pos:\t0\nflags:\t02\n", 0)

    def test_truncated_value(self) -> None:
        with pytest.raises(ValueError):
            parse_fdinfo("drm-client-id:\t\n", 0)


class TestFdinfoScanner:
    @pytest.fixture(autouse=True)
    def _fake_drm_fds(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """fd names starting with 9 are render nodes, 8 card nodes."""

        def minor_of(path: str) -> int | None:
            fd = path.rsplit("/", 1)[-1]
            if fd.startswith("9"):
                return 128
            if fd.startswith("8"):
                return 0
            return None

        monkeypatch.setattr(_fdinfo, "drm_minor_of", minor_of)

    def test_groups_by_device(self, tmp_path: Path) -> None:
        _make_proc(tmp_path, 100, {"9": XE_FDINFO, "3": "pos:\t0\n"})
        _make_proc(tmp_path, 200, {"8": I915_FDINFO})
        scanner = FdinfoScanner(root=str(tmp_path))
        scanner.refresh()

        xe = scanner.entries_for("0000:03:00.0")
        assert len(xe) == 1
        assert xe[0].pid == 100
        assert xe[0].info.client_id == 42
        assert xe[0].proc is not None
        assert xe[0].proc.comm == "proc100"
        assert xe[0].proc.cpu_ticks == 40
        assert xe[0].cmdline == "proc100"

        i915 = scanner.entries_for("0000:00:02.0")
        assert [e.pid for e in i915] == [200]
        assert scanner.entries_for("0000:99:00.0") == []

    def test_same_client_twice_in_one_process(self, tmp_path: Path) -> None:
        _make_proc(tmp_path, 100, {"9": XE_FDINFO, "91": XE_FDINFO})
        scanner = FdinfoScanner(root=str(tmp_path))
        scanner.refresh()
        assert len(scanner.entries_for("0000:03:00.0")) == 1

    def test_shared_fd_attributed_once(self, tmp_path: Path) -> None:
        _make_proc(tmp_path, 100, {"9": XE_FDINFO})
        _make_proc(tmp_path, 101, {"9": XE_FDINFO})
        scanner = FdinfoScanner(root=str(tmp_path))
        scanner.refresh()
        entries = scanner.entries_for("0000:03:00.0")
        assert len(entries) == 1
        assert entries[0].pid == 100
        assert entries[0].shared_pids == (101,)

    def test_malformed_fdinfo_skipped(self, tmp_path: Path) -> None:
        _make_proc(tmp_path, 100, {"9": "drm-client-id:\tnot-a-number\n", "91": XE_FDINFO})
        scanner = FdinfoScanner(root=str(tmp_path))
        scanner.refresh()
        assert [e.info.client_id for e in scanner.entries_for("0000:03:00.0")] == [42]

    def test_pid_filter(self, tmp_path: Path) -> None:
        _make_proc(tmp_path, 100, {"9": XE_FDINFO})
        _make_proc(tmp_path, 200, {"8": I915_FDINFO})
        scanner = FdinfoScanner(root=str(tmp_path))
        scanner.refresh({200})
        assert scanner.entries_for("0000:03:00.0") == []
        assert len(scanner.entries_for("0000:00:02.0")) == 1

    def test_refresh_replaces_previous_scan(self, tmp_path: Path) -> None:
        _make_proc(tmp_path, 100, {"9": XE_FDINFO})
        scanner = FdinfoScanner(root=str(tmp_path))
        scanner.refresh()
        (tmp_path / "100" / "fd" / "9").unlink()
        scanner.refresh()
        assert scanner.entries_for("0000:03:00.0") == []

    def test_missing_pdev_resolved_from_minor(self, tmp_path: Path) -> None:
        proc = tmp_path / "proc"
        drm = tmp_path / "class" / "drm"
        dev = tmp_path / "devices" / "pci0000:00" / "0000:05:00.0"
        dev.mkdir(parents=True)
        (drm / "renderD128").mkdir(parents=True)
        os.symlink(dev, drm / "renderD128" / "device")
        (drm / "renderD128" / "dev").write_text("226:128\n")
        no_pdev = "".join(
            line + "\n" for line in XE_FDINFO.splitlines() if not line.startswith("drm-pdev")
        )
        _make_proc(proc, 100, {"9": no_pdev})
        _make_proc(proc, 200, {"8": no_pdev})

        scanner = FdinfoScanner(root=str(proc), sysfs_root=str(drm))
        scanner.refresh()
        [entry] = scanner.entries_for("0000:05:00.0")
        assert entry.pid == 100
        assert entry.info.pdev == "0000:05:00.0"
        # minor 0 has no node: nothing to attribute it to
        assert scanner.entries_for("") == []
