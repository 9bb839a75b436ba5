from __future__ import annotations

import json
import os
import re
import threading
from typing import Any, Optional

_LOG_NAME = re.compile(r"^(request|sendTomodel|response)-(\d+)\.log$")
# Numbering scans the directory; concurrent requests must not pick the same number
_NUMBER_LOCK = threading.Lock()


def next_log_number(log_dir: str) -> int:
    try:
        names = os.listdir(log_dir)
    except FileNotFoundError:
        return 1
    numbers = [int(m.group(2)) for m in map(_LOG_NAME.match, names) if m]
    numbers = [n for n in numbers if n > 0]
    return max(numbers) + 1 if numbers else 1


class RequestLogs:
    """The three per-request log files: inbound body, upstream body, upstream response."""

    def __init__(self, log_dir: str, number: int) -> None:
        self.log_dir = log_dir
        self.number = number

    @classmethod
    def allocate(cls, log_dir: str) -> "RequestLogs":
        with _NUMBER_LOCK:
            os.makedirs(log_dir, exist_ok=True)
            logs = cls(log_dir, next_log_number(log_dir))
            # Reserve the number before releasing the lock
            open(logs.request_file, "w", encoding="utf-8").close()
        return logs

    def _path(self, kind: str) -> str:
        return os.path.join(self.log_dir, f"{kind}-{self.number}.log")

    @property
    def request_file(self) -> str:
        return self._path("request")

    @property
    def upstream_request_file(self) -> str:
        return self._path("sendTomodel")

    @property
    def response_file(self) -> str:
        return self._path("response")

    @staticmethod
    def _write_json(path: str, obj: Any, mode: str = "w") -> None:
        with open(path, mode, encoding="utf-8") as f:
            f.write(json.dumps(obj, ensure_ascii=False, indent=2))

    def write_request(self, body: Any) -> None:
        self._write_json(self.request_file, body)

    def write_upstream_request(self, body: Any) -> None:
        self._write_json(self.upstream_request_file, body)

    def write_response(self, body: Any) -> None:
        self._write_json(self.response_file, body)

    def start_response_stream(self) -> None:
        open(self.response_file, "wb").close()

    def append_response_bytes(self, chunk: bytes) -> None:
        with open(self.response_file, "ab") as f:
            f.write(chunk)

    def append_error(self, message: str, stack: Optional[str] = None) -> None:
        obj = {"error": message}
        if stack:
            obj["stack"] = stack
        self._write_json(self.response_file, obj, mode="a")

    def names(self) -> str:
        return ", ".join(os.path.basename(p) for p in (self.request_file, self.upstream_request_file, self.response_file))
