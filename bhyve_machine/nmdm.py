"""Copy a serial device to an append-only log file.

Run detached as ``python -m bhyve_machine.nmdm <device> <logfile>``.
"""

from __future__ import annotations

import sys
import time
from pathlib import Path
from typing import BinaryIO, List, Optional

CHUNK_SIZE = 128
IDLE_SLEEP = 0.1


def copy_stream(source: BinaryIO, log_path: Path, max_chunks: Optional[int] = None) -> int:
    """Append everything read from ``source`` to ``log_path``.

    The log file is reopened per chunk so it can be rotated underneath us.
    Returns the number of bytes copied once ``max_chunks`` reads happened.
    """
    copied = 0
    reads = 0
    while max_chunks is None or reads < max_chunks:
        chunk = source.read(CHUNK_SIZE)
        reads += 1
        if not chunk:
            time.sleep(IDLE_SLEEP)
            continue
        with open(log_path, "ab") as log_file:
            log_file.write(chunk)
        copied += len(chunk)
    return copied


def main(argv: Optional[List[str]] = None) -> int:
    args = sys.argv[1:] if argv is None else argv
    if len(args) != 2:
        print("usage: python -m bhyve_machine.nmdm <device> <logfile>", file=sys.stderr)
        return 2
    device, log_path = args
    try:
        with open(device, "rb", buffering=0) as source:
            copy_stream(source, Path(log_path))
    except OSError as exc:
        print(f"nmdm: {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
