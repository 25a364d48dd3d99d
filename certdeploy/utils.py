# utils.py
# Common helpers used across the CLI.
# All timestamps are UTC; snapshot directory names use the compact local form.

import ipaddress
import logging
import re
import shlex
import subprocess
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Sequence

from dateutil import parser as dtp

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"
DEFAULT_TIMEOUT = 120
NAME_RE = re.compile(r"[A-Za-z0-9][A-Za-z0-9._-]*")

logger = logging.getLogger(__name__)


@dataclass
class CommandResult:
    """Outcome of one external command. `ok` is False on non-zero exit,
    timeout, or a missing executable."""
    argv: Sequence[str]
    ok: bool
    returncode: Optional[int]
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False

    @property
    def diagnostic(self) -> str:
        return (self.stderr or self.stdout).strip()


def run_cmd(argv: Sequence[str], timeout: Optional[float] = DEFAULT_TIMEOUT) -> CommandResult:
    """Run argv and report the result instead of raising."""
    logger.debug("Running: %s", " ".join(shlex.quote(a) for a in argv))
    try:
        r = subprocess.run(list(argv), stdout=subprocess.PIPE, stderr=subprocess.PIPE,
                           text=True, timeout=timeout, check=False)
    except FileNotFoundError as e:
        return CommandResult(argv, False, None, "", f"{argv[0]}: command not found ({e})")
    except subprocess.TimeoutExpired as e:
        out = e.stdout.decode() if isinstance(e.stdout, bytes) else (e.stdout or "")
        return CommandResult(argv, False, None, out,
                             f"{argv[0]}: timed out after {timeout}s", timed_out=True)
    return CommandResult(argv, r.returncode == 0, r.returncode, r.stdout, r.stderr)


def setup_logging(level: str = "INFO", log_file: Optional[Path] = None):
    logging.basicConfig(format=LOG_FORMAT, level=getattr(logging, level.upper(), logging.INFO),
                        datefmt=LOG_DATEFMT)
    if not log_file:
        return
    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(str(log_file))
        fh.setFormatter(logging.Formatter(LOG_FORMAT, LOG_DATEFMT))
        logging.getLogger().addHandler(fh)
    except OSError as e:
        logger.warning(f"Could not set up file logging: {e}")


def parse_x509_date(s: str) -> datetime:
    """Parse openssl's 'notBefore=Oct  4 12:34:56 2025 GMT' value into aware UTC datetime."""
    return dtp.parse(s).astimezone(timezone.utc)


def days_until(exp: datetime) -> int:
    """Return integer number of full days from now until exp."""
    return int((exp - datetime.now(timezone.utc)).total_seconds() // 86400)


def fmt_utc(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def ts_compact() -> str:
    """Timestamp for backup directory names, e.g. 20251004-123456."""
    return datetime.now().strftime("%Y%m%d-%H%M%S")


def is_ip(value: str) -> bool:
    try:
        ipaddress.ip_address(value)
        return True
    except ValueError:
        return False


def norm_ip(value: str) -> str:
    """Canonical text form of an IP literal; anything else is returned unchanged."""
    try:
        return str(ipaddress.ip_address(value))
    except ValueError:
        return value


def is_valid_name(value: str) -> bool:
    """Config/certificate names become file names under the Nginx root."""
    return bool(value) and NAME_RE.fullmatch(value) is not None
