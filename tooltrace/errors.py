from __future__ import annotations


class UpstreamError(RuntimeError):
    """The upstream API answered with a non-success status before any streaming began."""

    def __init__(self, status_code: int, reason: str = "", body: str = "") -> None:
        self.status_code = status_code
        self.reason = reason
        self.body = body
        super().__init__(f"Upstream API request failed: {status_code} {reason}".rstrip())
