"""Utility functions for bhyve-machine."""

from __future__ import annotations

import os
import random
import shutil
import tempfile
import time
from pathlib import Path
from typing import Optional
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from bhyve_machine.constants import _LOG_VERBOSE, MAC_ADDRESS_RE, MAC_OUI_PREFIX, TRUTHY
from bhyve_machine.exceptions import MachineError

_verbose = _LOG_VERBOSE


def set_verbose(enabled: bool) -> None:
    global _verbose
    _verbose = enabled


def log(level: str, message: str) -> None:
    """Lightweight structured logging compatible with existing colour expectation."""
    if level == "DEBUG" and not _verbose:
        return
    colours = {
        "INFO": "\033[0;34m",
        "WARN": "\033[1;33m",
        "ERROR": "\033[0;31m",
        "SUCCESS": "\033[0;32m",
        "DEBUG": "\033[0;90m",
    }
    colour = colours.get(level, "")
    reset = "\033[0m" if colour else ""
    print(f"{colour}[{level}]{reset} {message}", flush=True)


def get_env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(name, default)


def get_env_bool(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.lower() in TRUTHY


def parse_int(name: str, raw: str, min_val: int = 1, max_val: Optional[int] = None) -> int:
    try:
        value = int(raw)
    except (TypeError, ValueError):
        raise MachineError(f"{name} must be an integer (got '{raw}')")
    if value < min_val:
        raise MachineError(f"{name} must be >= {min_val} (got {value})")
    if max_val is not None and value > max_val:
        raise MachineError(f"{name} must be <= {max_val} (got {value})")
    return value


def ensure_directory(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def file_exists(path: Path) -> bool:
    """True for an existing non-directory path (device nodes included)."""
    return path.exists() and not path.is_dir()


def random_mac() -> str:
    """Generate a MAC address under the fixed locally-administered OUI."""
    octets = [random.randint(0x00, 0xFF) for _ in range(3)]
    return MAC_OUI_PREFIX + ":" + ":".join(f"{octet:02x}" for octet in octets)


def is_valid_mac(value: str) -> bool:
    return bool(MAC_ADDRESS_RE.match(value))


def strip_control_chars(text: str) -> str:
    """Drop control and non-ASCII characters from tool output before logging."""
    return "".join(ch for ch in text if 32 <= ord(ch) < 127)


def read_record(path: Path) -> Optional[str]:
    """Return the stripped first line of a one-line record file, or None."""
    try:
        value = path.read_text().strip()
    except OSError:
        return None
    return value or None


def copy_file(src: Path, dst: Path) -> None:
    if not src.is_file():
        raise MachineError(f"{src} is not a regular file")
    shutil.copyfile(src, dst)
    shutil.copymode(src, dst)


def download_file(url: str, destination: Path, label: str = "Downloading") -> None:
    """Download a file into place, logging progress every 64 MiB."""
    log("INFO", f"{label}: {url}")
    req = Request(url, headers={"User-Agent": "bhyve-machine/1.0"})
    try:
        response = urlopen(req, timeout=60)
    except HTTPError as exc:
        raise MachineError(f"HTTP error downloading {url}: {exc.code} {exc.reason}")
    except URLError as exc:
        raise MachineError(f"Failed to download {url}: {exc.reason}")

    downloaded = 0
    start_time = time.time()
    with tempfile.NamedTemporaryFile(delete=False, dir=destination.parent) as tmp:
        tmp_path = Path(tmp.name)
        try:
            chunk_size = 1024 * 256  # 256 KiB
            while True:
                chunk = response.read(chunk_size)
                if not chunk:
                    break
                tmp.write(chunk)
                downloaded += len(chunk)
                if downloaded % (1024 * 1024 * 64) < chunk_size:
                    log("DEBUG", f"{downloaded / (1024 * 1024):.1f} MiB downloaded")
            tmp.flush()
            tmp_path.replace(destination)
        except Exception:
            tmp_path.unlink(missing_ok=True)
            raise
    elapsed = time.time() - start_time
    log("SUCCESS", f"Downloaded {downloaded / (1024 * 1024):.1f} MiB in {elapsed:.1f}s")
