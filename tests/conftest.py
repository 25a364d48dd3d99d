"""Shared fixtures: a throwaway Nginx root and a scripted proxy runtime."""
import shutil
from pathlib import Path

import pytest

from certdeploy.ir import ConfigLocation

requires_openssl = pytest.mark.skipif(shutil.which("openssl") is None, reason="openssl binary not available")

MAIN_CONF = "events {}\nhttp {\n    include conf.d/*.conf;\n}\n"
SITE_CONF = "server {\n    listen 80;\n    server_name old.example.com;\n}\n"


class FakeRuntime:
    """Stands in for NginxRuntime. `checks` is consumed one result per call."""

    def __init__(self, checks=None, reload_result=(True, ""), on_check=None):
        self.checks = list(checks or [(True, "syntax is ok")])
        self.reload_result = reload_result
        self.on_check = on_check
        self.check_calls = 0
        self.reload_calls = 0
        self.seen = []

    def check_config(self):
        self.check_calls += 1
        if self.on_check:
            self.on_check()
        return self.checks.pop(0) if len(self.checks) > 1 else self.checks[0]

    def reload(self):
        self.reload_calls += 1
        return self.reload_result

    def is_active(self):
        return True


def tree(root: Path) -> dict:
    """relative path -> bytes for every file below root."""
    return {str(p.relative_to(root)): p.read_bytes() for p in sorted(root.rglob("*")) if p.is_file()}


def live_state(location: ConfigLocation) -> dict:
    state = tree(location.conf_dir) if location.conf_dir.exists() else {}
    if location.main_conf.exists():
        state["<nginx.conf>"] = location.main_conf.read_bytes()
    return state


@pytest.fixture
def location(tmp_path) -> ConfigLocation:
    loc = ConfigLocation(tmp_path / "nginx")
    loc.conf_dir.mkdir(parents=True)
    loc.main_conf.write_text(MAIN_CONF)
    (loc.conf_dir / "old.conf").write_text(SITE_CONF)
    (loc.conf_dir / "snippets").mkdir()
    (loc.conf_dir / "snippets" / "headers.inc").write_text("add_header X-Test 1;\n")
    return loc


@pytest.fixture
def runtime():
    return FakeRuntime()
