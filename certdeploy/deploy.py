# deploy.py
# End-to-end runs: certificate -> rendered server block -> activation.

import logging
from pathlib import Path
from typing import Optional

from .acme import CertbotClient
from .activate import activate, apply_changes
from .cert_ops import obtain
from .errors import PreconditionError
from .ir import ActivationResult, CertificateRequest, ConfigLocation
from .nginx import NginxRuntime
from .site_config import check_template, load_template, render
from .utils import fmt_utc

logger = logging.getLogger(__name__)


def deploy(req: CertificateRequest, location: ConfigLocation, runtime: NginxRuntime,
           frontend_port: Optional[int], backend_port: Optional[int],
           template_path: Optional[Path] = None, acme: Optional[CertbotClient] = None,
           timeout: float = 120, **acme_kw):
    """Returns (bundle, ActivationResult). The name and the template are checked
    before a certificate is generated; certificate and rendering failures raise
    before the live configuration is touched."""
    if not req.name:
        raise PreconditionError("a configuration name is required (--name)")
    location.site_path(req.name)
    template = load_template(template_path)
    check_template(template, req.name, req.domain, frontend_port, backend_port)

    logger.info(f"[1/3] Obtaining {req.issuer.value} certificate for {req.domain}...")
    bundle = obtain(req, location.self_signed_dir, acme=acme, timeout=timeout, **acme_kw)
    logger.info(f"   Valid until {fmt_utc(bundle.not_after)}")

    logger.info(f"[2/3] Rendering configuration {req.name}.conf...")
    rendered = render(template, req.name, req.domain, frontend_port, backend_port, bundle)

    logger.info("[3/3] Activating configuration...")
    result = activate(rendered, location, runtime)
    return bundle, result


def _read(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise PreconditionError(f"cannot read {path}: {e}") from e


def deploy_sites(project_dir: Path, location: ConfigLocation, runtime: NginxRuntime) -> ActivationResult:
    """Install <project>/nginx/nginx.conf and <project>/nginx/conf.d/*.conf."""
    src = Path(project_dir) / "nginx"
    if not src.is_dir():
        raise PreconditionError(f"Project nginx directory not found: {src}")

    logger.info("[1/2] Collecting configuration files...")
    writes = {}
    if (src / "nginx.conf").is_file():
        writes[location.main_conf] = _read(src / "nginx.conf")
    else:
        logger.warning("   No nginx.conf found in project, using existing")
    conf_d = src / "conf.d"
    if conf_d.is_dir():
        for f in sorted(conf_d.glob("*.conf")):
            writes[location.conf_dir / f.name] = _read(f)
    else:
        logger.warning("   No conf.d directory found in project")
    if not writes:
        raise PreconditionError(f"nothing to deploy under {src}")

    # the distribution's default server conflicts with ours
    default = location.conf_dir / "default.conf"
    removes = [] if default in writes else [default]

    logger.info("[2/2] Activating configuration...")
    return apply_changes(location, runtime, writes, removes)


def result_doc(result: ActivationResult) -> dict:
    doc = {
        "result": "active" if result.success else "rolled-back",
        "state": result.state.value,
        "snapshot": str(result.snapshot.path) if result.snapshot else None,
        "written": [str(p) for p in result.written],
    }
    if not result.success:
        doc["diagnostic"] = result.diagnostic
    return doc
