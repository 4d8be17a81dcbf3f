"""Helpers for inspecting devices, mounts and filesystems."""

from __future__ import annotations

import os
import subprocess

BLKID_CMD = "/sbin/blkid"
PROC_MOUNTS = "/proc/mounts"


def _stat_rdev(path: str) -> int | None:
    try:
        return os.stat(path).st_rdev
    except FileNotFoundError:
        return None
    except OSError as exc:
        raise OSError(exc.errno, f"stat failed for {path}: {exc.strerror}") from exc


def is_same_device(dev1: str, dev2: str) -> bool:
    """Whether two paths name the same device.

    A path that does not exist (tmpfs, nfs and the like have no device
    file) is simply not the same device.
    """
    if dev1 == dev2:
        return True
    rdev1 = _stat_rdev(dev1)
    if rdev1 is None:
        return False
    rdev2 = _stat_rdev(dev2)
    if rdev2 is None:
        return False
    return rdev1 == rdev2


def _consistent_read(path: str, attempts: int = 3) -> bytes:
    with open(path, "rb") as f:
        old = f.read()
    for _ in range(attempts):
        with open(path, "rb") as f:
            new = f.read()
        if new == old:
            return new
        old = new
    raise OSError(f"could not get consistent content of {path} after {attempts} attempts")


def is_mounted(device: str, target: str, mounts_path: str = PROC_MOUNTS) -> bool:
    """Whether ``device`` is mounted on ``target`` according to the mount table."""
    target = os.path.realpath(os.path.abspath(target), strict=True)

    try:
        data = _consistent_read(mounts_path)
    except OSError as exc:
        raise OSError(f"could not read {mounts_path}: {exc}") from exc

    for line in data.decode("utf-8", "surrogateescape").split("\n"):
        fields = line.split()
        if len(fields) < 2:
            continue
        # Compare devices first: resolving the mount point of a broken
        # network filesystem can hang.
        if not is_same_device(device, fields[0]):
            continue
        if os.path.realpath(fields[1], strict=True) == target:
            return True
    return False


def detect_filesystem(device: str) -> str:
    """Return the filesystem type on ``device``, or "" if it has none."""
    fd = os.open(device, os.O_RDONLY)
    try:
        # flush dirty data before probing
        try:
            os.fsync(fd)
        except OSError:
            pass
    finally:
        os.close(fd)

    proc = subprocess.run(
        [BLKID_CMD, "-c", "/dev/null", "-o", "export", device],
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        check=False,
    )
    output = proc.stdout.decode("utf-8", "replace")
    if proc.returncode == 2:
        # blkid exits with 2 when nothing is found
        return ""
    if proc.returncode != 0:
        raise RuntimeError(
            f"blkid failed: output={output}, device={device}, "
            f"error=exit status {proc.returncode}"
        )

    for line in output.split("\n"):
        if line.startswith("TYPE="):
            return line[len("TYPE="):]
    return ""