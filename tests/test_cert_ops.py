"""Tests for the certificate provider."""
import socket
import stat
import threading
from datetime import timedelta
from unittest.mock import Mock

import pytest

import certdeploy.cert_ops as cert_ops
from certdeploy.cert_ops import (
    _build_config, check_dns, create_self_signed, default_sans, load_bundle, obtain_acme, pick_challenge,
    resolve_host,
)
from certdeploy.errors import DnsMismatchWarning, PreconditionError
from certdeploy.ir import CertificateBundle, CertificateRequest, ChallengeMode, Issuer
from certdeploy.x509 import parse_san_text, x509_meta

from conftest import requires_openssl, tree

EXPECTED_SANS = {"app.example.com", "localhost", "*.app.example.com", "203.0.113.5", "127.0.0.1"}


def _req(**kw):
    base = dict(domain="app.example.com", name="ecommerce", server_ip="203.0.113.5",
                email="ops@example.com", validity_days=365)
    base.update(kw)
    return CertificateRequest(**base)


def test_default_sans():
    assert default_sans("app.example.com", "203.0.113.5") == [
        "app.example.com", "localhost", "*.app.example.com", "203.0.113.5", "127.0.0.1"]


def test_default_sans_with_extras_deduplicated():
    sans = default_sans("localhost", "10.0.0.1", {"api.example.com", "10.0.0.2", "localhost"})
    assert sans == ["localhost", "*.localhost", "api.example.com", "10.0.0.1", "127.0.0.1", "10.0.0.2"]


def test_openssl_config_alt_names():
    cnf = _build_config("app.example.com", default_sans("app.example.com", "203.0.113.5"), 2048)
    assert "DNS.1 = app.example.com" in cnf
    assert "DNS.2 = localhost" in cnf
    assert "DNS.3 = *.app.example.com" in cnf
    assert "IP.1 = 203.0.113.5" in cnf
    assert "IP.2 = 127.0.0.1" in cnf
    assert "CN = app.example.com" in cnf


def test_parse_san_text():
    text = """        X509v3 extensions:
            X509v3 Subject Alternative Name:
                DNS:app.example.com, DNS:localhost, IP Address:203.0.113.5, IP Address:2001:DB8:0:0:0:0:0:1
    Signature Algorithm: sha256WithRSAEncryption
"""
    assert parse_san_text(text) == ["app.example.com", "localhost", "203.0.113.5", "2001:DB8:0:0:0:0:0:1"]


def test_self_signed_requires_name_and_ip(tmp_path):
    with pytest.raises(PreconditionError):
        create_self_signed(_req(name=""), tmp_path)
    with pytest.raises(PreconditionError):
        create_self_signed(_req(server_ip=""), tmp_path)
    with pytest.raises(PreconditionError):
        create_self_signed(_req(server_ip="not-an-ip"), tmp_path)
    with pytest.raises(PreconditionError):
        create_self_signed(_req(name="../../escaped"), tmp_path)
    assert list(tmp_path.iterdir()) == []


def test_dns_mismatch_is_precondition_error():
    with pytest.raises(PreconditionError):
        check_dns("app.example.com", "203.0.113.5", resolver=lambda d: {"198.51.100.7"})


def test_dns_unresolvable_is_precondition_error():
    with pytest.raises(PreconditionError):
        check_dns("app.example.com", "203.0.113.5", resolver=lambda d: set())


def test_dns_mismatch_allowed_warns():
    with pytest.warns(DnsMismatchWarning):
        check_dns("app.example.com", "203.0.113.5", allow_mismatch=True, resolver=lambda d: {"198.51.100.7"})


def test_dns_match():
    assert check_dns("app.example.com", "203.0.113.5",
                     resolver=lambda d: {"203.0.113.5", "2001:db8::1"}) == {"203.0.113.5", "2001:db8::1"}


def test_dns_match_ipv6_spelled_differently():
    assert check_dns("app.example.com", "2001:DB8:0::5", resolver=lambda d: {"2001:db8::5"}) == {"2001:db8::5"}


def test_dns_lookup_timeout_is_precondition_error(monkeypatch):
    release = threading.Event()

    def hang(*a, **kw):
        release.wait(5)
        raise socket.gaierror("released")

    monkeypatch.setattr(cert_ops.socket, "getaddrinfo", hang)
    try:
        with pytest.raises(PreconditionError, match="timed out"):
            resolve_host("app.example.com", timeout=0.05)
    finally:
        release.set()


def test_malformed_domain_is_precondition_error(monkeypatch):
    def bad_label(*a, **kw):
        raise UnicodeError("label empty or too long")

    monkeypatch.setattr(cert_ops.socket, "getaddrinfo", bad_label)
    with pytest.raises(PreconditionError, match="invalid domain"):
        resolve_host("app..example.com")


def test_acme_stops_before_certificate_authority_on_dns_mismatch(tmp_path):
    acme = Mock()
    le_root = tmp_path / "letsencrypt"
    le_root.mkdir()

    with pytest.raises(PreconditionError):
        obtain_acme(_req(issuer=Issuer.ACME), acme, resolver=lambda d: {"198.51.100.7"}, probe=lambda: False)
    acme.request_certificate.assert_not_called()
    acme.schedule_renewal.assert_not_called()
    assert tree(tmp_path) == {}


def test_acme_requires_email():
    acme = Mock()
    with pytest.raises(PreconditionError):
        obtain_acme(_req(issuer=Issuer.ACME, email=""), acme, resolver=lambda d: {"203.0.113.5"})
    acme.request_certificate.assert_not_called()


def test_acme_success_registers_renewal(tmp_path):
    bundle = CertificateBundle(tmp_path / "fullchain.pem", tmp_path / "privkey.pem",
                               None, None, Issuer.ACME)
    acme = Mock()
    acme.request_certificate.return_value = bundle
    acme.verify_renewal.return_value = True

    got = obtain_acme(_req(issuer=Issuer.ACME), acme, resolver=lambda d: {"203.0.113.5"}, probe=lambda: True)

    acme.request_certificate.assert_called_once_with("app.example.com", "ops@example.com", ChallengeMode.NGINX)
    acme.schedule_renewal.assert_called_once_with("app.example.com")
    assert got.renewal_verified is True


def test_pick_challenge():
    assert pick_challenge(ChallengeMode.AUTO, lambda: True) == ChallengeMode.NGINX
    assert pick_challenge(ChallengeMode.AUTO, lambda: False) == ChallengeMode.STANDALONE
    assert pick_challenge(ChallengeMode.WEBROOT, lambda: True) == ChallengeMode.WEBROOT


@requires_openssl
def test_self_signed_scenario(tmp_path):
    cert_dir = tmp_path / "ssl" / "self-signed"
    bundle = create_self_signed(_req(), cert_dir)

    assert bundle.certificate_path == cert_dir / "ecommerce.crt"
    assert bundle.private_key_path == cert_dir / "ecommerce.key"
    assert bundle.certificate_path.is_file()
    assert bundle.issuer == Issuer.SELF_SIGNED
    assert abs((bundle.not_after - bundle.not_before) - timedelta(days=365)) <= timedelta(days=1)
    assert len(bundle.san) == 5
    assert set(bundle.san) == EXPECTED_SANS

    key_mode = stat.S_IMODE(bundle.private_key_path.stat().st_mode)
    assert key_mode & 0o077 == 0
    crt_mode = stat.S_IMODE(bundle.certificate_path.stat().st_mode)
    assert crt_mode & 0o004
    # no temp files left behind
    assert sorted(p.name for p in cert_dir.iterdir()) == ["ecommerce.crt", "ecommerce.key"]


@requires_openssl
def test_self_signed_twice_gives_two_independent_bundles(tmp_path):
    first = create_self_signed(_req(), tmp_path / "a")
    second = create_self_signed(_req(), tmp_path / "b")
    m1, m2 = x509_meta(first.certificate_path), x509_meta(second.certificate_path)
    assert m1.serial != m2.serial
    assert m1.sha256 != m2.sha256
    assert set(m1.san) == set(m2.san) == EXPECTED_SANS


@requires_openssl
def test_self_signed_rerun_replaces_bundle_in_place(tmp_path):
    first = create_self_signed(_req(), tmp_path)
    serial = x509_meta(first.certificate_path).serial
    second = create_self_signed(_req(validity_days=30), tmp_path)
    assert second.certificate_path == first.certificate_path
    assert x509_meta(second.certificate_path).serial != serial
    assert abs((second.not_after - second.not_before) - timedelta(days=30)) <= timedelta(days=1)


@requires_openssl
def test_load_bundle_reads_existing_pair(tmp_path):
    made = create_self_signed(_req(), tmp_path)
    loaded = load_bundle(made.certificate_path, made.private_key_path)
    assert loaded.issuer == Issuer.SELF_SIGNED
    assert loaded.not_after == made.not_after


def test_load_bundle_missing_files(tmp_path):
    with pytest.raises(PreconditionError):
        load_bundle(tmp_path / "x.crt", tmp_path / "x.key")
