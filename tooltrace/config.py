import os
from typing import List, Optional


def _flag(name: str, default: str) -> bool:
    return os.environ.get(name, default).lower() in ("1", "true", "yes")


class Settings:
    def __init__(self) -> None:
        self.upstream_base_url: str = os.environ.get("UPSTREAM_BASE_URL", "https://api.deepseek.com/v1")
        self.upstream_api_key: Optional[str] = os.environ.get("UPSTREAM_API_KEY") or None
        # Every forwarded request has its model replaced by this id
        self.upstream_model: str = os.environ.get("UPSTREAM_MODEL", "deepseek-chat")
        try:
            self.upstream_timeout: float = float(os.environ.get("UPSTREAM_TIMEOUT", "120"))
        except Exception:
            self.upstream_timeout = 120.0
        self.http2: bool = _flag("PROXY_HTTP2", "0")
        self.debug: bool = _flag("DEBUG_PROXY", "0")
        self.log_dir: str = os.environ.get("LOG_DIR", os.path.join(os.getcwd(), "log"))
        self.tool_detail_file: str = os.environ.get(
            "TOOL_DETAIL_FILE", os.path.join(os.getcwd(), "tooldetail.json")
        )
        # Empty string disables mirroring console output to a file
        self.console_log_file: str = os.environ.get("CONSOLE_LOG_FILE", os.path.join(os.getcwd(), "a.log"))
        origins_raw = os.environ.get("CORS_ORIGINS", "vscode-file://vscode-app")
        self.cors_origins: List[str] = [o.strip() for o in origins_raw.split(",") if o.strip()]

    def chat_completions_url(self) -> str:
        return f"{self.upstream_base_url.rstrip('/')}/chat/completions"


settings = Settings()
