"""Tests for settings resolution."""
import pytest

from certdeploy.config import Settings, apply_overrides, from_env, load_settings
from certdeploy.errors import PreconditionError


def test_defaults():
    s = Settings()
    assert s.cert_validity_days == 365
    assert s.nginx_root == "/etc/nginx"
    assert s.allow_dns_mismatch is False


def test_environment_overrides_defaults():
    s = from_env({"DOMAIN": "app.example.com", "SERVER_IP": "203.0.113.5",
                  "CERT_VALIDITY_DAYS": "30", "ALLOW_DNS_MISMATCH": "yes", "LETSENCRYPT_EMAIL": ""})
    assert s.domain == "app.example.com"
    assert s.server_ip == "203.0.113.5"
    assert s.cert_validity_days == 30
    assert s.allow_dns_mismatch is True
    assert s.email == ""


def test_bad_integer_in_environment():
    with pytest.raises(PreconditionError):
        from_env({"BACKEND_PORT": "four thousand"})


def test_file_overrides_environment(tmp_path):
    f = tmp_path / "certdeploy.yml"
    f.write_text("domain: file.example.com\nbackend_port: 8080\n")
    s = load_settings(f, environ={"DOMAIN": "env.example.com", "SERVER_IP": "10.0.0.1"})
    assert s.domain == "file.example.com"
    assert s.server_ip == "10.0.0.1"
    assert s.backend_port == 8080


def test_file_is_schema_checked(tmp_path):
    f = tmp_path / "certdeploy.yml"
    f.write_text("backend_port: 70000\n")
    with pytest.raises(PreconditionError):
        load_settings(f, environ={})
    f.write_text("unknown_key: 1\n")
    with pytest.raises(PreconditionError):
        load_settings(f, environ={})


def test_unreadable_file(tmp_path):
    with pytest.raises(PreconditionError):
        load_settings(tmp_path / "missing.yml", environ={})


def test_cli_overrides_ignore_none_and_unknown():
    s = apply_overrides(Settings(domain="a"), domain=None, server_ip="1.2.3.4", output="json")
    assert s.domain == "a"
    assert s.server_ip == "1.2.3.4"
