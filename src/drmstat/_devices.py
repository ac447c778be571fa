"""DRM device enumeration over /sys/class/drm."""

from __future__ import annotations

import logging
import os
import re

from drmstat._sysfs import SYSFS_DRM, link_name, try_text
from drmstat._types import Device, DevNode, VirtFn

logger = logging.getLogger("drmstat.devices")

_NODE_RE = re.compile(r"^(card|renderD)(\d+)$")

VENDOR_NAMES = {
    "8086": "Intel Corporation",
    "1002": "Advanced Micro Devices, Inc. [AMD/ATI]",
    "10de": "NVIDIA Corporation",
}


def _hex_id(path: str) -> str:
    raw = try_text(path)
    if raw is None:
        return ""
    return raw.lower().removeprefix("0x")


def _node_minor(entry_dir: str, default: int) -> int:
    dev = try_text(os.path.join(entry_dir, "dev"))
    if dev and ":" in dev:
        try:
            return int(dev.split(":")[1])
        except ValueError:
            pass
    return default


def virt_fn_of(sysfs_path: str) -> VirtFn:
    """Virtualization role of the PCI function at ``sysfs_path``."""
    if os.path.isdir(os.path.join(sysfs_path, "vfio-dev")):
        return VirtFn.VFIO
    if os.path.islink(os.path.join(sysfs_path, "physfn")):
        return VirtFn.SRIOV_VF
    if os.path.islink(os.path.join(sysfs_path, "virtfn0")):
        return VirtFn.SRIOV_PF
    return VirtFn.NONE


def enumerate_devices(
    *,
    root: str = SYSFS_DRM,
    dev_root: str = "/dev/dri",
    slots: tuple[str, ...] = (),
) -> list[Device]:
    """Group card/render nodes by their parent device, sorted by slot.

    ``slots`` restricts the result to the given device slots.
    """
    devices: dict[str, Device] = {}
    try:
        entries = sorted(os.listdir(root))
    except OSError:
        logger.info("No DRM class directory at %s", root, exc_info=True)
        return []

    for entry in entries:
        m = _NODE_RE.match(entry)
        if m is None:
            continue
        entry_dir = os.path.join(root, entry)
        dev_link = os.path.join(entry_dir, "device")
        if not os.path.exists(dev_link):
            continue
        sysfs_path = os.path.realpath(dev_link)
        slot = os.path.basename(sysfs_path)
        if slots and slot not in slots:
            continue

        device = devices.get(slot)
        if device is None:
            vendor_id = _hex_id(os.path.join(sysfs_path, "vendor"))
            device = Device(
                slot=slot,
                driver=link_name(os.path.join(sysfs_path, "driver")) or "",
                sysfs_path=sysfs_path,
                vendor_id=vendor_id,
                device_id=_hex_id(os.path.join(sysfs_path, "device")),
                revision=_hex_id(os.path.join(sysfs_path, "revision")),
                vendor_name=VENDOR_NAMES.get(vendor_id, ""),
            )
            devices[slot] = device

        minor = _node_minor(entry_dir, int(m.group(2)))
        device.add_node(DevNode(path=os.path.join(dev_root, entry), minor=minor))

    for slot in slots:
        if slot not in devices:
            logger.warning("Requested device %s not found", slot)

    return [devices[s] for s in sorted(devices)]


def sysname_from_drm_minor(minor: int, *, root: str = SYSFS_DRM) -> str | None:
    """Device slot owning DRM ``minor``, or None."""
    try:
        entries = os.listdir(root)
    except OSError:
        return None
    for entry in entries:
        m = _NODE_RE.match(entry)
        if m is None:
            continue
        entry_dir = os.path.join(root, entry)
        if _node_minor(entry_dir, int(m.group(2))) != minor:
            continue
        dev_link = os.path.join(entry_dir, "device")
        if os.path.exists(dev_link):
            return os.path.basename(os.path.realpath(dev_link))
    return None
