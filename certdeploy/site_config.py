# site_config.py
# Render the per-domain server block. Pure text substitution: placeholders are
# {{name}} so Nginx's own $variables pass through untouched.

import importlib.resources as pkg
import re
from pathlib import Path
from typing import Optional

from .errors import MissingParameterError, PreconditionError
from .ir import CertificateBundle, RenderedConfig

PLACEHOLDER = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")
DEFAULT_TEMPLATE = "site.conf.tmpl"
BUNDLE_PARAMS = {"ssl_certificate", "ssl_certificate_key"}


def load_template(path: Optional[Path] = None) -> str:
    if path is None:
        return pkg.files("certdeploy.templates").joinpath(DEFAULT_TEMPLATE).read_text(encoding="utf-8")
    try:
        return Path(path).read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise PreconditionError(f"cannot read template {path}: {e}") from e


def placeholders(template: str):
    return {m.group(1) for m in PLACEHOLDER.finditer(template)}


def substitute(template: str, params: dict) -> str:
    """Replace every placeholder; all of them must have a non-empty value."""
    missing = {k for k in placeholders(template) if params.get(k) in (None, "")}
    if missing:
        raise MissingParameterError(missing)
    return PLACEHOLDER.sub(lambda m: str(params[m.group(1)]), template)


def _params(domain, frontend_port, backend_port, bundle, upstream_host) -> dict:
    return {
        "domain": domain,
        "frontend_port": frontend_port,
        "backend_port": backend_port,
        "upstream_host": upstream_host,
        "ssl_certificate": bundle.certificate_path if bundle else None,
        "ssl_certificate_key": bundle.private_key_path if bundle else None,
    }


def check_template(template: str, name: str, domain: str,
                   frontend_port: Optional[int], backend_port: Optional[int],
                   upstream_host: str = "127.0.0.1"):
    """Raise MissingParameterError for every placeholder render() could not
    fill, leaving out the certificate paths that only exist once the bundle does."""
    if not name:
        raise MissingParameterError({"name"})
    params = _params(domain, frontend_port, backend_port, None, upstream_host)
    missing = {k for k in placeholders(template) - BUNDLE_PARAMS if params.get(k) in (None, "")}
    if missing:
        raise MissingParameterError(missing)


def render(template: str, name: str, domain: str,
           frontend_port: Optional[int], backend_port: Optional[int],
           bundle: Optional[CertificateBundle], upstream_host: str = "127.0.0.1") -> RenderedConfig:
    if not name:
        raise MissingParameterError({"name"})
    params = _params(domain, frontend_port, backend_port, bundle, upstream_host)
    return RenderedConfig(name=name, domain=domain, text=substitute(template, params), bundle=bundle)
