# x509.py
# Read certificate metadata through the openssl binary.

import re
from pathlib import Path

from .errors import GenerationError
from .ir import X509Meta
from .utils import run_cmd, parse_x509_date


def _openssl(*args: str, timeout=30) -> str:
    r = run_cmd(["openssl", *args], timeout=timeout)
    if not r.ok:
        raise GenerationError(f"openssl {args[0]} failed: {r.diagnostic}")
    return r.stdout.strip()


def parse_san_text(text: str):
    """Extract SAN entries from `openssl x509 -text` output.
    'DNS:a, IP Address:1.2.3.4' -> ['a', '1.2.3.4']"""
    lines = iter(text.splitlines())
    for ln in lines:
        if "Subject Alternative Name" in ln:
            raw = next(lines, "").strip()
            out = []
            for item in raw.split(","):
                item = item.strip()
                if not item:
                    continue
                _, _, value = item.partition(":")
                out.append(value.strip())
            return out
    return []


def x509_meta(crt_path: Path) -> X509Meta:
    crt = str(crt_path)
    start = _openssl("x509", "-in", crt, "-noout", "-startdate").split("=", 1)[1]
    end = _openssl("x509", "-in", crt, "-noout", "-enddate").split("=", 1)[1]
    serial = _openssl("x509", "-in", crt, "-noout", "-serial").split("=", 1)[1]
    sha = _openssl("x509", "-in", crt, "-noout", "-fingerprint", "-sha256").split("=", 1)[1].replace(":", "")
    subject = _openssl("x509", "-in", crt, "-noout", "-subject").split("=", 1)[1].strip()
    text = _openssl("x509", "-in", crt, "-noout", "-text")

    bits = 0
    m = re.search(r"Public-Key:\s*\((\d+)\s*bit\)", text)
    if m:
        bits = int(m.group(1))
    return X509Meta(
        not_before=parse_x509_date(start),
        not_after=parse_x509_date(end),
        serial=serial,
        sha256=sha,
        subject=subject,
        san=parse_san_text(text),
        pubkey_bits=bits,
    )
