# cli.py
# Argument parser and entrypoints wired to ops modules.

import argparse
import logging
import os
from pathlib import Path

from .acme import CertbotClient
from .activate import activate, restore_snapshot
from .cert_ops import bundle_doc, cert_show, create_self_signed, load_bundle, obtain_acme
from .config import apply_overrides, load_settings
from .deploy import deploy, deploy_sites, result_doc
from .errors import EXIT_OK, EXIT_PRECONDITION, EXIT_ROLLED_BACK, CertDeployError, PreconditionError
from .health import all_passed, run_checks
from .ir import CertificateRequest, ChallengeMode, ConfigLocation, Issuer, RenderedConfig
from .nginx import NginxRuntime
from .render import fmt_table, output
from .site_config import load_template, render
from .snapshots import config_lock, find_snapshot, list_snapshots, snapshot
from .utils import fmt_utc, is_valid_name, setup_logging

logger = logging.getLogger("certdeploy")


def build_parser():
    p = argparse.ArgumentParser(
        prog="certdeploy",
        description="Provision TLS certificates and activate Nginx site configs with automatic rollback"
    )
    p.add_argument("--output", choices=["json", "table", "yaml"], default="json", help="Output format")
    p.add_argument("--config", type=Path, default=None, help="YAML settings file")
    p.add_argument("--log-level", default="INFO", help="DEBUG, INFO, WARNING, ERROR")
    p.add_argument("--log-file", type=Path, default=None, help="Also write the log to this file")
    p.add_argument("--nginx-root", default=None, help="Nginx configuration root (default: /etc/nginx)")
    p.add_argument("--timeout", type=float, default=None, dest="command_timeout",
                   help="Timeout in seconds for each external command")
    p.add_argument("--skip-root-check", action="store_true", help="Do not require root privileges")
    sub = p.add_subparsers(dest="cmd", required=True)

    # ---- Certificate commands ----
    cert = sub.add_parser("cert", help="Certificate operations")
    cert_sub = cert.add_subparsers(dest="cert_cmd", required=True)

    c_self = cert_sub.add_parser("self-signed", help="Generate a self-signed certificate")
    c_self.add_argument("--name", dest="cert_name", help="Certificate file name (without extension)")
    c_self.add_argument("--domain")
    c_self.add_argument("--server-ip")
    c_self.add_argument("--days", type=int, dest="cert_validity_days")
    c_self.add_argument("--san", action="append", default=[], help="Extra SAN entry (repeatable)")
    c_self.add_argument("--cert-dir", type=Path, default=None,
                        help="Output directory (default: <nginx-root>/ssl/self-signed)")
    c_self.set_defaults(func=cmd_cert_self_signed, privileged=True)

    c_acme = cert_sub.add_parser("acme", help="Obtain a Let's Encrypt certificate with certbot")
    c_acme.add_argument("--domain")
    c_acme.add_argument("--server-ip")
    c_acme.add_argument("--email")
    c_acme.add_argument("--challenge", choices=[m.value for m in ChallengeMode], default="auto")
    c_acme.add_argument("--allow-dns-mismatch", action="store_true", default=None)
    c_acme.add_argument("--letsencrypt-root", default=None)
    c_acme.set_defaults(func=cmd_cert_acme, privileged=True)

    c_show = cert_sub.add_parser("show", help="Show certificate details")
    c_show.add_argument("path", type=Path)
    c_show.set_defaults(func=cmd_cert_show, privileged=False)

    # ---- Site configuration commands ----
    conf = sub.add_parser("config", help="Site configuration operations")
    conf_sub = conf.add_subparsers(dest="config_cmd", required=True)

    r = conf_sub.add_parser("render", help="Render the site template for one domain")
    r.add_argument("--name", dest="cert_name", help="Configuration name (<name>.conf)")
    r.add_argument("--domain")
    r.add_argument("--cert", type=Path, required=True, help="Certificate (or fullchain) PEM")
    r.add_argument("--key", type=Path, required=True, help="Private key PEM")
    r.add_argument("--template", type=Path, default=None)
    r.add_argument("--frontend-port", type=int)
    r.add_argument("--backend-port", type=int)
    r.add_argument("--file", default="-", help="Output file or '-' (stdout)")
    r.set_defaults(func=cmd_config_render, privileged=False)

    a = conf_sub.add_parser("activate", help="Install a rendered config, test it, reload or roll back")
    a.add_argument("--name", dest="cert_name", help="Configuration name (<name>.conf)")
    a.add_argument("--file", type=Path, required=True, help="Rendered configuration file")
    a.set_defaults(func=cmd_config_activate, privileged=True)

    # ---- Full workflow ----
    d = sub.add_parser("deploy", help="Certificate + render + activate in one run")
    d.add_argument("--name", dest="cert_name")
    d.add_argument("--domain")
    d.add_argument("--server-ip")
    d.add_argument("--email")
    d.add_argument("--issuer", choices=[i.value for i in Issuer], default=Issuer.SELF_SIGNED.value)
    d.add_argument("--days", type=int, dest="cert_validity_days")
    d.add_argument("--san", action="append", default=[])
    d.add_argument("--challenge", choices=[m.value for m in ChallengeMode], default="auto")
    d.add_argument("--allow-dns-mismatch", action="store_true", default=None)
    d.add_argument("--letsencrypt-root", default=None)
    d.add_argument("--template", type=Path, default=None)
    d.add_argument("--frontend-port", type=int)
    d.add_argument("--backend-port", type=int)
    d.add_argument("--verify-health", action="store_true", help="Run health checks after activation")
    d.set_defaults(func=cmd_deploy, privileged=True)

    s = sub.add_parser("sites", help="Project site configuration")
    s_sub = s.add_subparsers(dest="sites_cmd", required=True)
    s_dep = s_sub.add_parser("deploy", help="Install <project>/nginx configs with backup and rollback")
    s_dep.add_argument("--project-dir", default=None)
    s_dep.set_defaults(func=cmd_sites_deploy, privileged=True)

    # ---- Snapshots ----
    snap = sub.add_parser("snapshot", help="Configuration snapshots (never pruned automatically)")
    snap_sub = snap.add_subparsers(dest="snapshot_cmd", required=True)
    sl = snap_sub.add_parser("list", help="List snapshots, newest first")
    sl.set_defaults(func=cmd_snapshot_list, privileged=False)
    sc = snap_sub.add_parser("create", help="Take a snapshot of the live configuration")
    sc.set_defaults(func=cmd_snapshot_create, privileged=True)
    sr = snap_sub.add_parser("restore", help="Replace the live configuration with a snapshot")
    sr.add_argument("name", help="Snapshot directory name, e.g. backup-20250101-120000")
    sr.add_argument("--no-reload", action="store_true", help="Test the restored files but do not reload Nginx")
    sr.set_defaults(func=cmd_snapshot_restore, privileged=True)

    # ---- Health ----
    h = sub.add_parser("health", help="Check upstreams and the proxy service")
    h.add_argument("--frontend-url")
    h.add_argument("--backend-url")
    h.add_argument("--retries", type=int, default=5)
    h.add_argument("--delay", type=float, default=5)
    h.set_defaults(func=cmd_health, privileged=False)

    return p


def _settings(args):
    s = load_settings(args.config)
    overrides = {k: v for k, v in vars(args).items() if k not in ("config", "func")}
    s = apply_overrides(s, **overrides)
    if s.cert_name and not is_valid_name(s.cert_name):
        raise PreconditionError(f"invalid name {s.cert_name!r}: use letters, digits, '.', '_' or '-'")
    return s


def _location(s):
    return ConfigLocation(Path(s.nginx_root))


def _runtime(s):
    return NginxRuntime(_location(s), nginx_bin=s.nginx_bin,
                        reload_command=s.reload_command, timeout=s.command_timeout)


def _request(args, s, issuer: Issuer):
    return CertificateRequest(
        domain=s.domain,
        name=s.cert_name,
        server_ip=s.server_ip,
        email=s.email,
        subject_alt_names=frozenset(getattr(args, "san", []) or []),
        validity_days=s.cert_validity_days,
        issuer=issuer,
        challenge=ChallengeMode(getattr(args, "challenge", "auto")),
        allow_dns_mismatch=s.allow_dns_mismatch,
    )


def _require(s, *names):
    missing = [n for n in names if not getattr(s, n)]
    if missing:
        raise PreconditionError("missing required setting(s): " + ", ".join(missing))


def _activation_exit(result, out):
    output(result_doc(result), out)
    if result.success:
        return EXIT_OK
    logger.error("Activation failed and was rolled back; the previous configuration is still serving traffic.")
    return EXIT_ROLLED_BACK


# Cert dispatchers
def cmd_cert_self_signed(args, s):
    _require(s, "cert_name", "domain", "server_ip")
    cert_dir = args.cert_dir or _location(s).self_signed_dir
    bundle = create_self_signed(_request(args, s, Issuer.SELF_SIGNED), cert_dir, timeout=s.command_timeout)
    output(bundle_doc(bundle), args.output)


def cmd_cert_acme(args, s):
    _require(s, "domain", "server_ip", "email")
    acme = CertbotClient(Path(s.letsencrypt_root), timeout=s.command_timeout)
    bundle = obtain_acme(_request(args, s, Issuer.ACME), acme)
    output(bundle_doc(bundle), args.output)


def cmd_cert_show(args, s):
    cert_show(args.path, args.output)


# Config dispatchers
def cmd_config_render(args, s):
    _require(s, "cert_name", "domain")
    bundle = load_bundle(args.cert, args.key, Path(s.letsencrypt_root))
    rendered = render(load_template(args.template), s.cert_name, s.domain,
                      s.frontend_port, s.backend_port, bundle)
    if args.file == "-":
        print(rendered.text, end="")
        return
    try:
        with open(args.file, "w", encoding="utf-8") as f:
            f.write(rendered.text)
    except OSError as e:
        raise PreconditionError(f"cannot write {args.file}: {e}") from e


def cmd_config_activate(args, s):
    _require(s, "cert_name")
    try:
        text = args.file.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise PreconditionError(f"cannot read {args.file}: {e}") from e
    rendered = RenderedConfig(name=s.cert_name, domain=s.domain, text=text)
    return _activation_exit(activate(rendered, _location(s), _runtime(s)), args.output)


def cmd_deploy(args, s):
    issuer = Issuer(args.issuer)
    _require(s, "cert_name", "domain", "server_ip")
    if issuer == Issuer.ACME:
        _require(s, "email")
    acme = CertbotClient(Path(s.letsencrypt_root), timeout=s.command_timeout)
    bundle, result = deploy(_request(args, s, issuer), _location(s), _runtime(s),
                            s.frontend_port, s.backend_port, template_path=args.template,
                            acme=acme, timeout=s.command_timeout)
    logger.info(f"Certificate: {bundle.certificate_path} (valid until {fmt_utc(bundle.not_after)})")
    code = _activation_exit(result, args.output)
    if code == EXIT_OK and args.verify_health:
        checks = run_checks(s.frontend_url, s.backend_url, _runtime(s).is_active)
        if not all_passed(checks):
            logger.warning("Configuration is active but some health checks failed")
    return code


def cmd_sites_deploy(args, s):
    return _activation_exit(deploy_sites(Path(s.project_dir), _location(s), _runtime(s)), args.output)


# Snapshot dispatchers
def _snapshot_row(snap):
    return {"name": snap.name, "created_at": snap.created_at.strftime("%Y-%m-%d %H:%M:%S"),
            "path": str(snap.path)}


def cmd_snapshot_list(args, s):
    rows_data = [_snapshot_row(x) for x in list_snapshots(_location(s))]
    if args.output == "table":
        if not rows_data:
            print("No snapshots found.")
            return
        rows = [["NAME", "CREATED_AT", "PATH"]]
        rows += [[r["name"], r["created_at"], r["path"]] for r in rows_data]
        print(fmt_table(rows))
    else:
        output(rows_data, args.output)


def cmd_snapshot_create(args, s):
    loc = _location(s)
    with config_lock(loc):
        snap = snapshot(loc)
    output(_snapshot_row(snap), args.output)


def cmd_snapshot_restore(args, s):
    loc = _location(s)
    target = find_snapshot(loc, args.name)
    result = restore_snapshot(target, loc, _runtime(s), reload=not args.no_reload)
    return _activation_exit(result, args.output)


def cmd_health(args, s):
    checks = run_checks(s.frontend_url, s.backend_url, _runtime(s).is_active,
                        retries=args.retries, delay=args.delay)
    if args.output == "table":
        rows = [["CHECK", "TARGET", "OK"]] + [[c["check"], c["target"], "yes" if c["ok"] else "NO"] for c in checks]
        print(fmt_table(rows))
    else:
        output(checks, args.output)
    return EXIT_OK if all_passed(checks) else EXIT_PRECONDITION


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.log_level, args.log_file)
    try:
        s = _settings(args)
        if args.privileged and not args.skip_root_check and os.geteuid() != 0:
            raise PreconditionError("This command must be run as root (or pass --skip-root-check)")
        return args.func(args, s) or EXIT_OK
    except CertDeployError as e:
        logger.error(str(e))
        return e.exit_code
