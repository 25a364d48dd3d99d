# acme.py
# certbot wrapper. Certificates are obtained with `certonly` so certbot never
# edits the live Nginx configuration; activation stays with activate.py.

import logging
import shutil
from pathlib import Path

from .errors import GenerationError
from .ir import CertificateBundle, ChallengeMode, Issuer
from .utils import run_cmd, DEFAULT_TIMEOUT
from .x509 import x509_meta

logger = logging.getLogger(__name__)

WEBROOT = Path("/var/www/certbot")
RENEWAL_TIMER = "certbot.timer"


class CertbotClient:
    def __init__(self, letsencrypt_root: Path = Path("/etc/letsencrypt"),
                 certbot: str = "certbot", timeout: float = DEFAULT_TIMEOUT,
                 webroot: Path = WEBROOT):
        self.letsencrypt_root = Path(letsencrypt_root)
        self.certbot = certbot
        self.timeout = timeout
        self.webroot = Path(webroot)

    def live_dir(self, domain: str) -> Path:
        return self.letsencrypt_root / "live" / domain

    def installed(self) -> bool:
        return shutil.which(self.certbot) is not None

    def _challenge_args(self, mode: ChallengeMode):
        if mode == ChallengeMode.NGINX:
            return ["--nginx"]
        if mode == ChallengeMode.WEBROOT:
            self.webroot.mkdir(parents=True, exist_ok=True)
            return ["--webroot", "-w", str(self.webroot)]
        return ["--standalone"]

    def request_certificate(self, domain: str, email: str, mode: ChallengeMode) -> CertificateBundle:
        if not self.installed():
            raise GenerationError(
                f"{self.certbot} is not installed (apt install certbot python3-certbot-nginx)")
        argv = [self.certbot, "certonly", *self._challenge_args(mode),
                "-d", domain, "--cert-name", domain,
                "--non-interactive", "--agree-tos", "--email", email,
                "--key-type", "rsa", "--rsa-key-size", "2048"]
        logger.info(f"Requesting certificate for {domain} ({mode.value} challenge)")
        r = run_cmd(argv, timeout=self.timeout)
        if not r.ok:
            raise GenerationError(f"certbot could not obtain a certificate for {domain}:\n{r.diagnostic}")

        live = self.live_dir(domain)
        crt, key = live / "fullchain.pem", live / "privkey.pem"
        if not (crt.exists() and key.exists()):
            raise GenerationError(f"certbot reported success but {live} is incomplete")
        meta = x509_meta(crt)
        return CertificateBundle(
            certificate_path=crt,
            private_key_path=key,
            not_before=meta.not_before,
            not_after=meta.not_after,
            issuer=Issuer.ACME,
            san=meta.san,
        )

    def schedule_renewal(self, domain: str) -> None:
        """Renewal runs from the distribution's systemd timer; make sure it is on."""
        r = run_cmd(["systemctl", "enable", "--now", RENEWAL_TIMER], timeout=self.timeout)
        if not r.ok:
            raise GenerationError(f"could not enable {RENEWAL_TIMER} for {domain}: {r.diagnostic}")
        logger.info(f"Auto-renewal enabled via {RENEWAL_TIMER}")

    def verify_renewal(self, domain: str) -> bool:
        r = run_cmd([self.certbot, "renew", "--dry-run", "--cert-name", domain], timeout=self.timeout)
        if not r.ok:
            logger.warning(f"Renewal dry run failed for {domain}: {r.diagnostic}")
        return r.ok
