# cert_ops.py
# Certificate provider: self-signed bundles via openssl, ACME bundles via certbot.

import logging
import os
import shutil
import socket
import tempfile
import warnings
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from pathlib import Path
from typing import Callable, List, Optional, Set

from .acme import CertbotClient
from .errors import DnsMismatchWarning, GenerationError, PreconditionError
from .ir import CertificateBundle, CertificateRequest, ChallengeMode, Issuer, KeyAlgorithm
from .render import output
from .utils import days_until, fmt_utc, is_ip, is_valid_name, norm_ip, run_cmd, DEFAULT_TIMEOUT
from .x509 import x509_meta

logger = logging.getLogger(__name__)

DNS_TIMEOUT = 10
KEY_BITS = {KeyAlgorithm.RSA2048: 2048}

SUBJECT = {
    "C": "US",
    "ST": "California",
    "L": "San Francisco",
    "O": "Ecommerce",
    "OU": "DevOps",
}


def default_sans(domain: str, server_ip: str, extra=()) -> List[str]:
    """domain, localhost, *.domain, extra names, server IP, 127.0.0.1 (deduplicated)."""
    names = [domain, "localhost", f"*.{domain}"]
    names += sorted(s for s in extra if s and not is_ip(s))
    ips = [server_ip, "127.0.0.1"] + sorted(s for s in extra if s and is_ip(s))
    out = []
    for s in names + ips:
        if s and s not in out:
            out.append(s)
    return out


def _build_config(cn: str, sans: List[str], key_bits: int) -> str:
    lines = ["[ req ]",
             f"default_bits = {key_bits}",
             "default_md = sha256",
             "prompt = no",
             "encrypt_key = no",
             "distinguished_name = dn",
             "x509_extensions = v3_ca",
             "[ dn ]"]
    lines += [f"{k} = {v}" for k, v in SUBJECT.items()]
    lines += [f"CN = {cn}",
              "[ v3_ca ]",
              "basicConstraints = critical, CA:FALSE",
              "keyUsage = nonRepudiation, digitalSignature, keyEncipherment",
              "subjectAltName = @alt_names",
              "[ alt_names ]"]
    dns_i = ip_i = 0
    for s in sans:
        if is_ip(s):
            ip_i += 1
            lines.append(f"IP.{ip_i} = {s}")
        else:
            dns_i += 1
            lines.append(f"DNS.{dns_i} = {s}")
    return "\n".join(lines) + "\n"


def _set_owner_root(*paths: Path):
    if os.geteuid() != 0:
        logger.debug("Not running as root, leaving file ownership unchanged")
        return
    for p in paths:
        os.chown(p, 0, 0)


def create_self_signed(req: CertificateRequest, cert_dir: Path,
                       timeout: float = DEFAULT_TIMEOUT) -> CertificateBundle:
    """Generate <cert_dir>/<name>.key and <name>.crt. An existing bundle with
    the same name is replaced."""
    if not req.name:
        raise PreconditionError("a certificate name is required for self-signed bundles")
    if not is_valid_name(req.name):
        raise PreconditionError(f"invalid certificate name {req.name!r}")
    if not req.server_ip:
        raise PreconditionError("SERVER_IP not set")
    if not is_ip(req.server_ip):
        raise PreconditionError(f"SERVER_IP is not an IP address: {req.server_ip}")
    if req.validity_days <= 0:
        raise PreconditionError("validity must be at least one day")
    if shutil.which("openssl") is None:
        raise GenerationError("openssl is not installed")

    sans = default_sans(req.domain, req.server_ip, req.subject_alt_names)
    key_path = cert_dir / f"{req.name}.key"
    crt_path = cert_dir / f"{req.name}.crt"
    logger.info(f"Generating self-signed certificate for {req.domain} (valid {req.validity_days} days)")
    logger.info(f"   SANs: {', '.join(sans)}")

    try:
        cert_dir.mkdir(parents=True, exist_ok=True)
        # mkdtemp is 0700, so the key is never readable by others before chmod
        with tempfile.TemporaryDirectory(dir=cert_dir, prefix=".gen-") as td:
            cnf = Path(td) / "openssl-san.cnf"
            cnf.write_text(_build_config(req.domain, sans, KEY_BITS[req.key_algorithm]))
            tmp_key, tmp_crt = Path(td) / "key.pem", Path(td) / "crt.pem"
            r = run_cmd(["openssl", "req", "-x509", "-nodes",
                         "-days", str(req.validity_days),
                         "-newkey", f"rsa:{KEY_BITS[req.key_algorithm]}",
                         "-keyout", str(tmp_key), "-out", str(tmp_crt),
                         "-config", str(cnf)], timeout=timeout)
            if not r.ok:
                raise GenerationError(f"openssl failed: {r.diagnostic}")
            os.chmod(tmp_key, 0o600)
            os.chmod(tmp_crt, 0o644)
            _set_owner_root(tmp_key, tmp_crt)
            os.replace(tmp_key, key_path)
            os.replace(tmp_crt, crt_path)
    except OSError as e:
        raise GenerationError(f"cannot write certificate into {cert_dir}: {e}") from e

    meta = x509_meta(crt_path)
    logger.info(f"Certificate: {crt_path}")
    logger.info(f"Private key: {key_path}")
    return CertificateBundle(
        certificate_path=crt_path,
        private_key_path=key_path,
        not_before=meta.not_before,
        not_after=meta.not_after,
        issuer=Issuer.SELF_SIGNED,
        san=meta.san,
    )


def resolve_host(domain: str, timeout: float = DNS_TIMEOUT) -> Set[str]:
    """Addresses `domain` resolves to; empty set when it does not resolve."""
    ex = ThreadPoolExecutor(max_workers=1)
    fut = ex.submit(socket.getaddrinfo, domain, None, 0, socket.SOCK_STREAM)
    try:
        infos = fut.result(timeout=timeout)
    except FutureTimeout:
        raise PreconditionError(f"DNS lookup for {domain} timed out after {timeout}s")
    except socket.gaierror:
        return set()
    except UnicodeError as e:
        raise PreconditionError(f"invalid domain name {domain!r}: {e}") from e
    finally:
        ex.shutdown(wait=False)
    return {info[4][0] for info in infos}


def check_dns(domain: str, server_ip: str, allow_mismatch: bool = False,
              resolver: Callable[[str], Set[str]] = resolve_host) -> Set[str]:
    resolved = {norm_ip(a) for a in resolver(domain)}
    if not resolved:
        raise PreconditionError(
            f"Domain {domain} does not resolve to any IP. "
            f"Add an A record {domain} -> {server_ip} and wait for propagation.")
    logger.info(f"Domain {domain} resolves to: {', '.join(sorted(resolved))}")
    if norm_ip(server_ip) in resolved:
        return resolved
    msg = f"Domain {domain} resolves to {', '.join(sorted(resolved))} but SERVER_IP is {server_ip}"
    if not allow_mismatch:
        raise PreconditionError(msg + " (pass --allow-dns-mismatch to continue anyway)")
    warnings.warn(msg, DnsMismatchWarning)
    logger.warning(msg)
    return resolved


def port_in_use(port: int = 80, host: str = "127.0.0.1", timeout: float = 2) -> bool:
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False


def pick_challenge(mode: ChallengeMode, probe: Callable[[], bool] = port_in_use) -> ChallengeMode:
    if mode != ChallengeMode.AUTO:
        return mode
    if probe():
        logger.info("Port 80 is in use (probably by Nginx), using the nginx challenge")
        return ChallengeMode.NGINX
    logger.info("Port 80 is free, using standalone mode")
    return ChallengeMode.STANDALONE


def obtain_acme(req: CertificateRequest, acme: CertbotClient,
                resolver: Callable[[str], Set[str]] = resolve_host,
                probe: Callable[[], bool] = port_in_use) -> CertificateBundle:
    if not req.email:
        raise PreconditionError("Email address not configured (LETSENCRYPT_EMAIL)")
    if not req.server_ip:
        raise PreconditionError("SERVER_IP not set")
    check_dns(req.domain, req.server_ip, req.allow_dns_mismatch, resolver)
    mode = pick_challenge(req.challenge, probe)

    bundle = acme.request_certificate(req.domain, req.email, mode)
    acme.schedule_renewal(req.domain)
    bundle.renewal_verified = acme.verify_renewal(req.domain)
    logger.info(f"Certificate: {bundle.certificate_path}")
    logger.info(f"Private key: {bundle.private_key_path}")
    return bundle


def obtain(req: CertificateRequest, cert_dir: Path, acme: Optional[CertbotClient] = None,
           timeout: float = DEFAULT_TIMEOUT, **acme_kw) -> CertificateBundle:
    if req.issuer == Issuer.ACME:
        return obtain_acme(req, acme or CertbotClient(timeout=timeout), **acme_kw)
    return create_self_signed(req, cert_dir, timeout=timeout)


def bundle_doc(b: CertificateBundle) -> dict:
    doc = {
        "issuer": b.issuer.value,
        "certificate": str(b.certificate_path),
        "private_key": str(b.private_key_path),
        "not_before": fmt_utc(b.not_before),
        "not_after": fmt_utc(b.not_after),
        "san": b.san,
    }
    if b.renewal_verified is not None:
        doc["renewal_verified"] = b.renewal_verified
    return doc


def cert_show(path: Path, out: str):
    meta = x509_meta(path)
    doc = {
        "path": str(path),
        "subject": meta.subject,
        "san": meta.san,
        "not_before": fmt_utc(meta.not_before),
        "not_after": fmt_utc(meta.not_after),
        "days_left": days_until(meta.not_after),
        "serial": meta.serial,
        "sha256": meta.sha256,
        "pubkey_bits": meta.pubkey_bits,
    }
    output(doc, out)


def load_bundle(crt: Path, key: Path, letsencrypt_root: Path = Path("/etc/letsencrypt")) -> CertificateBundle:
    """Describe an existing certificate/key pair on disk."""
    crt, key = Path(crt), Path(key)
    for p in (crt, key):
        if not p.is_file():
            raise PreconditionError(f"{p} does not exist")
    meta = x509_meta(crt)
    issuer = Issuer.ACME if Path(letsencrypt_root) in crt.parents else Issuer.SELF_SIGNED
    return CertificateBundle(crt, key, meta.not_before, meta.not_after, issuer, meta.san)
