"""Mount table lookups for Postgres directories."""

from __future__ import annotations

import logging
import os

import psutil

logger = logging.getLogger("pgscv.fsutil")

# Filesystems that can back Postgres directories.
INTERESTING_FS = frozenset({"ext3", "ext4", "xfs", "btrfs", "zfs", "tmpfs", "overlay"})


def resolve_device_mapper_name(device: str) -> str:
    """Translate /dev/mapper/* symlinks to their target, e.g. /dev/dm-4."""
    try:
        target = os.readlink(device)
    except OSError as exc:
        logger.warning("failed to resolve symlink %s to origin: %s", device, exc)
        return ""
    return target.replace("..", "/dev", 1)


def read_mounts() -> dict[str, str]:
    """Return a mapping of mountpoint to device for interesting filesystems."""
    mounts: dict[str, str] = {}
    try:
        partitions = psutil.disk_partitions(all=True)
    except OSError as exc:
        logger.warning("failed to read mount table: %s", exc)
        return mounts
    for part in partitions:
        if part.fstype not in INTERESTING_FS:
            continue
        device = part.device
        if device.startswith("/dev/mapper/"):
            device = resolve_device_mapper_name(device)
        mounts[part.mountpoint] = device
    return mounts


def link_target(path: str) -> str:
    """Return where the symlink ``path`` points, as an absolute path."""
    target = os.readlink(path)
    if os.path.isabs(target):
        return target
    return os.path.normpath(os.path.join(os.path.dirname(path), target))


def rewrite_path(path: str) -> str:
    """Replace the longest symlinked prefix of ``path`` with its target.

    Only one symlink is dereferenced. Raises OSError when a path component
    does not exist.
    """
    parts = path.split("/")
    for i in range(len(parts), 0, -1):
        subpath = "/".join(parts[:i])
        if not subpath:
            continue
        if os.path.islink(subpath):
            target = link_target(subpath)
            rest = "/".join(parts[i:])
            return f"{target}/{rest}" if rest else target
        if not os.path.lexists(subpath):
            raise FileNotFoundError(subpath)
    return path


def find_mountpoint(path: str, mounts: dict[str, str]) -> tuple[str, str]:
    """Return ``(device, mountpoint)`` of the longest mountpoint containing ``path``.

    A path component which is a symlink to a mountpoint counts as that
    mountpoint. Falls back to the root filesystem.
    """
    parts = path.split("/")
    for i in range(len(parts), 0, -1):
        subpath = "/".join(parts[:i])
        if not subpath:
            break
        if os.path.islink(subpath):
            target = link_target(subpath)
            if target in mounts:
                subpath = target
        if subpath in mounts:
            return mounts[subpath], subpath
    return mounts.get("/", ""), "/"
