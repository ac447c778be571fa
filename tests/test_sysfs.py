"""Tests for _sysfs module."""

import os
from pathlib import Path

import pytest

from drmstat._sysfs import link_name, numbered_dirs, read_int, try_int, try_text


def test_read_int_strips_newline(tmp_path: Path) -> None:
    (tmp_path / "rps_act_freq_mhz").write_text("1300\n")
    assert read_int(str(tmp_path / "rps_act_freq_mhz")) == 1300


def test_read_int_hex(tmp_path: Path) -> None:
    (tmp_path / "vendor").write_text("0x8086\n")
    assert read_int(str(tmp_path / "vendor"), 16) == 0x8086


def test_read_int_garbage_raises(tmp_path: Path) -> None:
    (tmp_path / "x").write_text("n/a\n")
    with pytest.raises(ValueError):
        read_int(str(tmp_path / "x"))


def test_try_helpers_return_none_when_absent(tmp_path: Path) -> None:
    assert try_text(str(tmp_path / "missing")) is None
    assert try_int(str(tmp_path / "missing")) is None


def test_try_int_returns_none_on_garbage(tmp_path: Path) -> None:
    (tmp_path / "x").write_text("n/a\n")
    assert try_int(str(tmp_path / "x")) is None


def test_link_name(tmp_path: Path) -> None:
    (tmp_path / "drivers" / "xe").mkdir(parents=True)
    os.symlink(tmp_path / "drivers" / "xe", tmp_path / "driver")
    assert link_name(str(tmp_path / "driver")) == "xe"
    assert link_name(str(tmp_path / "nope")) is None


def test_numbered_dirs_stop_at_gap(tmp_path: Path) -> None:
    for name in ("gt0", "gt1", "gt3"):
        (tmp_path / name).mkdir()
    dirs = numbered_dirs(str(tmp_path), "gt")
    assert [os.path.basename(d) for d in dirs] == ["gt0", "gt1"]


def test_numbered_dirs_missing_base(tmp_path: Path) -> None:
    assert numbered_dirs(str(tmp_path / "absent"), "gt") == []
