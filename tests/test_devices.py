"""Tests for DRM device enumeration."""

import os
from pathlib import Path

from drmstat._devices import enumerate_devices, sysname_from_drm_minor, virt_fn_of
from drmstat._types import DevNode, VirtFn


def _make_pci_device(
    root: Path, slot: str, driver: str, vendor: str = "0x8086", device: str = "0xe20b"
) -> Path:
    dev = root / "devices" / "pci0000:00" / slot
    dev.mkdir(parents=True)
    (dev / "vendor").write_text(f"{vendor}\n")
    (dev / "device").write_text(f"{device}\n")
    (dev / "revision").write_text("0x01\n")
    drv = root / "bus" / "pci" / "drivers" / driver
    drv.mkdir(parents=True, exist_ok=True)
    os.symlink(drv, dev / "driver")
    return dev


def _make_node(drm: Path, name: str, dev: Path, minor: int) -> None:
    node = drm / name
    node.mkdir(parents=True)
    os.symlink(dev, node / "device")
    (node / "dev").write_text(f"226:{minor}\n")


def _make_tree(root: Path) -> Path:
    drm = root / "class" / "drm"
    drm.mkdir(parents=True)
    xe = _make_pci_device(root, "0000:03:00.0", "xe")
    i915 = _make_pci_device(root, "0000:00:02.0", "i915", device="0xa7a0")
    _make_node(drm, "card1", xe, 1)
    _make_node(drm, "renderD129", xe, 129)
    _make_node(drm, "card0", i915, 0)
    _make_node(drm, "renderD128", i915, 128)
    (drm / "card0-eDP-1").mkdir()
    (drm / "version").write_text("drm 1.1.0 20060810\n")
    return drm


class TestEnumerateDevices:
    def test_groups_nodes_by_device(self, tmp_path: Path) -> None:
        drm = _make_tree(tmp_path)
        devices = enumerate_devices(root=str(drm))
        assert [d.slot for d in devices] == ["0000:00:02.0", "0000:03:00.0"]

        igpu, dgpu = devices
        assert igpu.driver == "i915"
        assert igpu.vendor_id == "8086"
        assert igpu.device_id == "a7a0"
        assert igpu.revision == "01"
        assert igpu.vendor_name == "Intel Corporation"
        assert igpu.pci_id == "8086:a7a0"
        assert igpu.dev_nodes == [
            DevNode("/dev/dri/card0", 0),
            DevNode("/dev/dri/renderD128", 128),
        ]
        assert igpu.card_minor() == 0
        assert igpu.render_node() == "/dev/dri/renderD128"

        assert dgpu.driver == "xe"
        assert dgpu.card_minor() == 1

    def test_slot_selection(self, tmp_path: Path) -> None:
        drm = _make_tree(tmp_path)
        devices = enumerate_devices(root=str(drm), slots=("0000:03:00.0", "0000:ff:00.0"))
        assert [d.slot for d in devices] == ["0000:03:00.0"]

    def test_missing_class_dir(self, tmp_path: Path) -> None:
        assert enumerate_devices(root=str(tmp_path / "nothing")) == []

    def test_sysname_from_minor(self, tmp_path: Path) -> None:
        drm = _make_tree(tmp_path)
        assert sysname_from_drm_minor(129, root=str(drm)) == "0000:03:00.0"
        assert sysname_from_drm_minor(0, root=str(drm)) == "0000:00:02.0"
        assert sysname_from_drm_minor(130, root=str(drm)) is None


class TestVirtFn:
    def test_plain(self, tmp_path: Path) -> None:
        assert virt_fn_of(str(tmp_path)) is VirtFn.NONE

    def test_vfio(self, tmp_path: Path) -> None:
        (tmp_path / "vfio-dev").mkdir()
        assert virt_fn_of(str(tmp_path)) is VirtFn.VFIO

    def test_sriov_vf(self, tmp_path: Path) -> None:
        pf = tmp_path / "0000:03:00.0"
        vf = tmp_path / "0000:03:00.1"
        pf.mkdir()
        vf.mkdir()
        os.symlink(pf, vf / "physfn")
        os.symlink(vf, pf / "virtfn0")
        assert virt_fn_of(str(vf)) is VirtFn.SRIOV_VF
        assert virt_fn_of(str(pf)) is VirtFn.SRIOV_PF
