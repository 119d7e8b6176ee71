from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass

import psutil

from diskwatch.app.config import Settings
from diskwatch.app.schemas import VolumeReading


logger = logging.getLogger(__name__)

ROOT_MOUNT = "/"

PSEUDO_FILESYSTEMS = frozenset(
    {
        "autofs",
        "binfmt_misc",
        "bpf",
        "cgroup",
        "cgroup2",
        "configfs",
        "debugfs",
        "devfs",
        "devpts",
        "devtmpfs",
        "fusectl",
        "hugetlbfs",
        "mqueue",
        "nsfs",
        "overlay",
        "proc",
        "pstore",
        "ramfs",
        "securityfs",
        "squashfs",
        "sysfs",
        "tmpfs",
        "tracefs",
    }
)

SYSTEM_MOUNT_PREFIXES = (
    "/proc",
    "/sys",
    "/dev",
    "/run",
    "/snap",
    "/boot",
    "/System/Volumes",
    "/private/var/vm",
)

EXTERNAL_MOUNT_PREFIXES = ("/media", "/run/media", "/mnt", "/Volumes")

_SPLIT_PARTITION = re.compile(r"^((?:nvme\d+n\d+)|(?:mmcblk\d+))p\d+$")
_LETTERED_PARTITION = re.compile(r"^((?:sd|hd|vd|xvd)[a-z]+)\d+$")


@dataclass(slots=True)
class MountCandidate:
    mount_point: str
    device: str | None = None
    fstype: str | None = None
    opts: str = ""
    configured: bool = False


def _normalize_mount_path(path: str) -> str:
    cleaned = str(path).strip()
    if not cleaned:
        return ROOT_MOUNT
    if cleaned != ROOT_MOUNT:
        cleaned = cleaned.rstrip("/")
    return cleaned or ROOT_MOUNT


def _under(path: str, prefix: str) -> bool:
    return path == prefix or path.startswith(f"{prefix}/")


def _translate_host_path(mount: str, host_target: str) -> str:
    if not host_target or host_target == ROOT_MOUNT or not _under(mount, host_target):
        return mount
    suffix = mount[len(host_target):]
    if not suffix:
        return ROOT_MOUNT
    translated = _normalize_mount_path(suffix)
    if not translated.startswith("/"):
        translated = f"/{translated}"
    return translated


def _configured_mount_points(settings: Settings) -> tuple[list[str], bool]:
    configured: list[str] = []
    auto = False
    for entry in settings.mounted_points:
        token = str(entry).strip()
        if not token:
            continue
        if token.lower() == "auto" or token == "*":
            auto = True
            continue
        configured.append(_normalize_mount_path(token))
    return configured, auto


def _discover_mounts(settings: Settings) -> list[MountCandidate]:
    host_target = _normalize_mount_path(settings.host_root_target) if settings.host_root_target else ""
    try:
        partitions = psutil.disk_partitions(all=True)
    except Exception:
        logger.warning("Unable to list mounted partitions", exc_info=True)
        partitions = []

    mounts: dict[str, MountCandidate] = {}
    for partition in partitions:
        mount = getattr(partition, "mountpoint", "")
        if not mount:
            continue
        mount = _translate_host_path(_normalize_mount_path(mount), host_target)
        if mount in mounts:
            continue
        mounts[mount] = MountCandidate(
            mount_point=mount,
            device=getattr(partition, "device", None) or None,
            fstype=getattr(partition, "fstype", None) or None,
            opts=getattr(partition, "opts", "") or "",
        )
    if ROOT_MOUNT not in mounts:
        mounts = {ROOT_MOUNT: MountCandidate(mount_point=ROOT_MOUNT), **mounts}
    return list(mounts.values())


def _resolve_mounts(settings: Settings) -> list[MountCandidate]:
    configured, auto = _configured_mount_points(settings)
    discovered: list[MountCandidate] = []
    if auto or not configured:
        discovered = _discover_mounts(settings)
    known = {candidate.mount_point: candidate for candidate in discovered}

    explicit = [
        MountCandidate(
            mount_point=mount,
            device=known[mount].device if mount in known else None,
            fstype=known[mount].fstype if mount in known else None,
            opts=known[mount].opts if mount in known else "",
            configured=True,
        )
        for mount in configured
    ]
    sources = [*explicit, *discovered] if auto or not configured else explicit

    seen: set[str] = set()
    result: list[MountCandidate] = []
    for candidate in sources:
        if candidate.mount_point in seen:
            continue
        seen.add(candidate.mount_point)
        result.append(candidate)
    return result


def _is_hidden(candidate: MountCandidate) -> bool:
    if candidate.configured or candidate.mount_point == ROOT_MOUNT:
        return False
    if candidate.fstype and candidate.fstype.lower() in PSEUDO_FILESYSTEMS:
        return True
    if _under(candidate.mount_point, "/run/media"):
        return False
    if any(_under(candidate.mount_point, prefix) for prefix in SYSTEM_MOUNT_PREFIXES):
        return True
    return os.path.basename(candidate.mount_point).startswith(".")


def _candidate_paths_for_mount(mount: str, host_root_target: str) -> list[str]:
    candidates: list[str] = []
    host_target = _normalize_mount_path(host_root_target) if host_root_target else ""
    normalized_mount = _normalize_mount_path(mount)
    if host_target and host_target != ROOT_MOUNT:
        if normalized_mount == ROOT_MOUNT:
            candidates.append(host_target)
        else:
            suffix = normalized_mount.lstrip("/")
            candidate = os.path.join(host_target, suffix) if suffix else host_target
            candidates.append(_normalize_mount_path(candidate))
    candidates.append(normalized_mount)
    return candidates


def _is_directory_mount(mount: str, host_root_target: str) -> bool:
    """False for bind-mounted files such as ``/etc/hosts`` inside a container."""
    for path in _candidate_paths_for_mount(mount, host_root_target):
        if os.path.exists(path):
            return os.path.isdir(path)
    return True


def _get_disk_usage(mount: str, host_root_target: str):
    for candidate in _candidate_paths_for_mount(mount, host_root_target):
        try:
            return psutil.disk_usage(candidate)
        except (FileNotFoundError, PermissionError, OSError):
            continue
    return None


def _parent_block_device(name: str) -> str:
    match = _SPLIT_PARTITION.match(name)
    if match:
        return match.group(1)
    match = _LETTERED_PARTITION.match(name)
    if match:
        return match.group(1)
    # dm-0, loop0 and sr0 name whole devices
    return name


def _is_removable(candidate: MountCandidate) -> bool:
    if "removable" in candidate.opts.split(","):
        return True
    device = candidate.device
    if not device or not device.startswith("/dev/"):
        return False
    block = _parent_block_device(os.path.basename(os.path.realpath(device)))
    try:
        with open(f"/sys/block/{block}/removable") as handle:
            return handle.read().strip() == "1"
    except OSError:
        return False


def _is_internal(mount: str, removable: bool) -> bool:
    if removable:
        return False
    return not any(_under(mount, prefix) for prefix in EXTERNAL_MOUNT_PREFIXES)


def _display_name(mount: str, settings: Settings) -> str:
    if mount == ROOT_MOUNT:
        return settings.root_volume_name
    return os.path.basename(mount) or mount


def _sort_key(reading: VolumeReading) -> tuple[bool, bool, str]:
    # root first, then internal before external, then by name
    return (reading.mount_point != ROOT_MOUNT, not reading.is_internal, reading.name)


def enumerate_volumes(settings: Settings) -> list[VolumeReading]:
    readings: list[VolumeReading] = []
    for candidate in _resolve_mounts(settings):
        if _is_hidden(candidate):
            continue
        if not _is_directory_mount(candidate.mount_point, settings.host_root_target):
            logger.debug("Skipping %s: not a directory", candidate.mount_point)
            continue
        stats = _get_disk_usage(candidate.mount_point, settings.host_root_target)
        if stats is None or not getattr(stats, "total", 0):
            logger.debug("Skipping %s: capacity unavailable", candidate.mount_point)
            continue
        removable = _is_removable(candidate)
        readings.append(
            VolumeReading(
                mount_point=candidate.mount_point,
                name=_display_name(candidate.mount_point, settings),
                total_bytes=int(stats.total),
                free_bytes=max(0, int(stats.free)),
                is_removable=removable,
                is_internal=_is_internal(candidate.mount_point, removable),
                device=candidate.device,
                fstype=candidate.fstype,
            )
        )
    return sorted(readings, key=_sort_key)
