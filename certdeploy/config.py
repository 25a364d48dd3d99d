# config.py
# Settings resolution: defaults <- environment <- YAML file <- CLI flags.

import importlib.resources as pkg
import json
import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Mapping, Optional

import yaml
from jsonschema import ValidationError as SchemaError, validate

from .errors import PreconditionError


def _bool(v: str) -> bool:
    return v.lower() in ("true", "1", "yes")


@dataclass
class Settings:
    domain: str = ""
    server_ip: str = ""
    email: str = ""
    cert_name: str = ""
    cert_validity_days: int = 365
    nginx_root: str = "/etc/nginx"
    letsencrypt_root: str = "/etc/letsencrypt"
    project_dir: str = "/opt/app"
    frontend_port: int = 3000
    backend_port: int = 4000
    frontend_url: str = "http://localhost:3000"
    backend_url: str = "http://localhost:4000"
    allow_dns_mismatch: bool = False
    command_timeout: float = 120
    reload_command: str = "systemctl reload nginx"
    nginx_bin: str = "nginx"


ENV_VARS = {
    "domain": ("DOMAIN", str),
    "server_ip": ("SERVER_IP", str),
    "email": ("LETSENCRYPT_EMAIL", str),
    "cert_name": ("CERT_NAME", str),
    "cert_validity_days": ("CERT_VALIDITY_DAYS", int),
    "nginx_root": ("NGINX_ROOT", str),
    "letsencrypt_root": ("LETSENCRYPT_ROOT", str),
    "project_dir": ("PROJECT_DIR", str),
    "frontend_port": ("FRONTEND_PORT", int),
    "backend_port": ("BACKEND_PORT", int),
    "frontend_url": ("FRONTEND_URL", str),
    "backend_url": ("BACKEND_URL", str),
    "allow_dns_mismatch": ("ALLOW_DNS_MISMATCH", _bool),
    "command_timeout": ("COMMAND_TIMEOUT", float),
    "reload_command": ("RELOAD_COMMAND", str),
    "nginx_bin": ("NGINX_BIN", str),
}


def _schema() -> dict:
    with pkg.files("certdeploy.schemas").joinpath("config.schema.json").open("r", encoding="utf-8") as f:
        return json.load(f)


def from_env(environ: Mapping[str, str] = os.environ, base: Optional[Settings] = None) -> Settings:
    s = base or Settings()
    updates = {}
    for field_name, (var, conv) in ENV_VARS.items():
        raw = environ.get(var)
        if raw in (None, ""):
            continue
        try:
            updates[field_name] = conv(raw)
        except ValueError:
            raise PreconditionError(f"{var}={raw!r} is not a valid value")
    return replace(s, **updates)


def from_file(path: Path, base: Optional[Settings] = None) -> Settings:
    try:
        with open(path, encoding="utf-8") as f:
            doc = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise PreconditionError(f"cannot read settings file {path}: {e}") from e
    try:
        validate(instance=doc, schema=_schema())
    except SchemaError as e:
        raise PreconditionError(f"invalid settings file {path}: {e.message}") from e
    return replace(base or Settings(), **doc)


def load_settings(path: Optional[Path] = None, environ: Mapping[str, str] = os.environ) -> Settings:
    s = from_env(environ)
    if path:
        s = from_file(path, s)
    return s


def apply_overrides(s: Settings, **overrides) -> Settings:
    """CLI flags win; None means 'not given'."""
    names = {f.name for f in fields(Settings)}
    return replace(s, **{k: v for k, v in overrides.items() if k in names and v is not None})
