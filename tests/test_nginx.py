"""Tests for the proxy runtime wrapper and the command runner."""
import sys

from certdeploy import nginx as nginx_mod
from certdeploy.ir import ConfigLocation
from certdeploy.nginx import NginxRuntime
from certdeploy.utils import CommandResult, run_cmd


def test_run_cmd_reports_failure_instead_of_raising():
    r = run_cmd([sys.executable, "-c", "import sys; sys.stderr.write('nope'); sys.exit(3)"])
    assert not r.ok
    assert r.returncode == 3
    assert r.diagnostic == "nope"


def test_run_cmd_timeout_is_a_failure():
    r = run_cmd([sys.executable, "-c", "import time; time.sleep(5)"], timeout=0.2)
    assert not r.ok
    assert r.timed_out
    assert "timed out" in r.diagnostic


def test_run_cmd_missing_binary():
    r = run_cmd(["definitely-not-a-real-binary-xyz"])
    assert not r.ok
    assert "not found" in r.diagnostic


def test_check_config_tests_whole_set(monkeypatch, tmp_path):
    loc = ConfigLocation(tmp_path)
    loc.main_conf.write_text("events {}\n")
    seen = []
    monkeypatch.setattr(nginx_mod, "run_cmd",
                        lambda argv, timeout=None: seen.append(argv) or CommandResult(
                            argv, False, 1, "", "nginx: [emerg] unknown directive \"lisen\""))
    ok, diag = NginxRuntime(loc).check_config()
    assert not ok
    assert diag == "nginx: [emerg] unknown directive \"lisen\""
    assert seen[0] == ["nginx", "-t", "-c", str(loc.main_conf)]


def test_reload_is_graceful_by_default(monkeypatch, tmp_path):
    seen = []
    monkeypatch.setattr(nginx_mod, "run_cmd",
                        lambda argv, timeout=None: seen.append(argv) or CommandResult(argv, True, 0))
    ok, _ = NginxRuntime(ConfigLocation(tmp_path)).reload()
    assert ok
    assert seen[0] == ["systemctl", "reload", "nginx"]


def test_custom_reload_command(monkeypatch, tmp_path):
    seen = []
    monkeypatch.setattr(nginx_mod, "run_cmd",
                        lambda argv, timeout=None: seen.append(argv) or CommandResult(argv, True, 0))
    NginxRuntime(ConfigLocation(tmp_path), reload_command="nginx -s reload").reload()
    assert seen[0] == ["nginx", "-s", "reload"]
