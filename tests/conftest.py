import pytest

from tooltrace.config import settings


@pytest.fixture(autouse=True)
def _isolated_files(monkeypatch, tmp_path):
    # Keep logs, tool details and the console mirror out of the working directory
    monkeypatch.setattr(settings, "log_dir", str(tmp_path / "log"))
    monkeypatch.setattr(settings, "tool_detail_file", str(tmp_path / "tooldetail.json"))
    monkeypatch.setattr(settings, "console_log_file", str(tmp_path / "a.log"))
    monkeypatch.setattr(settings, "upstream_api_key", None)
    monkeypatch.setattr(settings, "debug", False)
