from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import FrozenSet, List, Optional

from .errors import PreconditionError
from .utils import is_valid_name


class Issuer(str, Enum):
    SELF_SIGNED = "self-signed"
    ACME = "acme"


class KeyAlgorithm(str, Enum):
    RSA2048 = "rsa2048"


class ChallengeMode(str, Enum):
    AUTO = "auto"
    NGINX = "nginx"
    STANDALONE = "standalone"
    WEBROOT = "webroot"


class ActivationState(str, Enum):
    PENDING = "pending"
    VALIDATING = "validating"
    ACTIVE = "active"
    ROLLED_BACK = "rolled-back"


@dataclass
class X509Meta:
    not_before: datetime
    not_after: datetime
    serial: str
    sha256: str
    subject: str
    san: List[str] = field(default_factory=list)
    pubkey_bits: int = 0


@dataclass
class CertificateRequest:
    domain: str
    name: str = ""                                # file stem for self-signed bundles
    server_ip: str = ""
    email: str = ""
    subject_alt_names: FrozenSet[str] = frozenset()   # extra SANs beyond the defaults
    validity_days: int = 365
    key_algorithm: KeyAlgorithm = KeyAlgorithm.RSA2048
    issuer: Issuer = Issuer.SELF_SIGNED
    challenge: ChallengeMode = ChallengeMode.AUTO
    allow_dns_mismatch: bool = False


@dataclass
class CertificateBundle:
    certificate_path: Path
    private_key_path: Path
    not_before: datetime
    not_after: datetime
    issuer: Issuer
    san: List[str] = field(default_factory=list)
    renewal_verified: Optional[bool] = None       # ACME only


@dataclass
class RenderedConfig:
    name: str
    domain: str
    text: str
    bundle: Optional[CertificateBundle] = None

    @property
    def filename(self) -> str:
        return f"{self.name}.conf"


@dataclass
class ConfigLocation:
    """Handle on the live proxy configuration. Everything that mutates it
    goes through this object."""
    root: Path = Path("/etc/nginx")

    def __post_init__(self):
        self.root = Path(self.root)

    @property
    def conf_dir(self) -> Path:
        return self.root / "conf.d"

    @property
    def main_conf(self) -> Path:
        return self.root / "nginx.conf"

    @property
    def self_signed_dir(self) -> Path:
        return self.root / "ssl" / "self-signed"

    @property
    def lock_path(self) -> Path:
        return self.root / ".certdeploy.lock"

    def site_path(self, name: str) -> Path:
        if not is_valid_name(name):
            raise PreconditionError(f"invalid configuration name {name!r}: use letters, digits, '.', '_' or '-'")
        return self.conf_dir / f"{name}.conf"


@dataclass
class ConfigSnapshot:
    path: Path
    created_at: datetime

    @property
    def name(self) -> str:
        return self.path.name

    @property
    def conf_dir(self) -> Path:
        return self.path / "conf.d"

    @property
    def main_conf(self) -> Path:
        return self.path / "nginx.conf"


@dataclass
class ActivationResult:
    success: bool
    state: ActivationState
    snapshot: Optional[ConfigSnapshot] = None
    written: List[Path] = field(default_factory=list)
    diagnostic: str = ""
