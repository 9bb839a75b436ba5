from __future__ import annotations

import sys
import threading
from datetime import datetime, timezone

from .config import settings

_FILE_LOCK = threading.Lock()


def timestamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _mirror(line: str) -> None:
    path = settings.console_log_file
    if not path:
        return
    try:
        with _FILE_LOCK:
            with open(path, "a", encoding="utf-8") as f:
                f.write(f"[{timestamp()}] {line}\n")
    except OSError as e:
        print(f"[proxy] console mirror write failed: {e}", file=sys.stderr)


def info(message: str) -> None:
    print(f"[proxy] {message}", file=sys.stderr)
    _mirror(message)


def error(message: str) -> None:
    print(f"[proxy] ERROR: {message}", file=sys.stderr)
    _mirror(f"ERROR: {message}")


def debug(message: str) -> None:
    """Verbose output, only with DEBUG_PROXY on."""
    if settings.debug:
        info(message)
