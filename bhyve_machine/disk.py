"""Guest disk image and boot image preparation."""

from __future__ import annotations

import io
import os
import tarfile
from pathlib import Path
from typing import Callable, Optional

from bhyve_machine.constants import KEY_BUNDLE_MAGIC, SSH_KEYGEN
from bhyve_machine.exceptions import NotFound
from bhyve_machine.executor import Executor
from bhyve_machine.utils import copy_file, download_file, file_exists, log


def generate_ssh_key(executor: Executor, key_path: Path) -> Path:
    """Create an RSA key pair at ``key_path`` unless one exists. Returns the public key."""
    public = key_path.with_name(key_path.name + ".pub")
    if file_exists(key_path) and file_exists(public):
        return public
    log("INFO", "Creating SSH key...")
    executor.check(SSH_KEYGEN, ["-q", "-t", "rsa", "-b", "2048", "-N", "", "-f", str(key_path)])
    return public


def _add_file(tar: tarfile.TarFile, name: str, data: bytes, mode: int = 0o644) -> None:
    info = tarfile.TarInfo(name=name)
    info.size = len(data)
    info.mode = mode
    tar.addfile(info, io.BytesIO(data))


def build_key_bundle(public_key: bytes) -> bytes:
    """boot2docker userdata tar: format marker first, then authorized keys."""
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w", format=tarfile.USTAR_FORMAT) as tar:
        # the automount script formats the disk when it sees this member first
        _add_file(tar, KEY_BUNDLE_MAGIC, KEY_BUNDLE_MAGIC.encode("utf-8"))
        ssh_dir = tarfile.TarInfo(name=".ssh")
        ssh_dir.type = tarfile.DIRTYPE
        ssh_dir.mode = 0o700
        tar.addfile(ssh_dir)
        _add_file(tar, ".ssh/authorized_keys", public_key)
        _add_file(tar, ".ssh/authorized_keys2", public_key)
    return buf.getvalue()


def create_raw_disk(disk_path: Path, size: int, bundle: Callable[[], bytes]) -> bool:
    """Create a sparse raw disk of ``size`` bytes prefixed with ``bundle()``.

    An existing image is left untouched. Returns True when a disk was created.
    """
    try:
        fd = os.open(disk_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
    except FileExistsError:
        log("DEBUG", f"Disk image {disk_path} already exists")
        return False
    with os.fdopen(fd, "wb") as handle:
        handle.truncate(size)
        handle.seek(0)
        handle.write(bundle())
    log("DEBUG", f"Created {size // (1024 * 1024)} MiB disk image {disk_path}")
    return True


def fetch_boot_image(destination: Path, url: Optional[str], cached: Path) -> None:
    """Place the boot ISO at ``destination`` from ``url`` or the local cache."""
    if file_exists(destination):
        log("DEBUG", f"Boot image {destination} already present")
        return
    if url:
        if url.startswith(("http://", "https://")):
            download_file(url, destination, label="Downloading boot image")
            return
        source = Path(url)
    else:
        source = cached
    if not file_exists(source):
        raise NotFound(f"Boot image not found: {source}")
    log("INFO", f"Copying {source} to {destination}...")
    copy_file(source, destination)
