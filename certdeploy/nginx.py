# nginx.py
# The running proxy as seen by the workflow: syntax check, graceful reload, status.

import logging
import shlex
from typing import Sequence, Tuple

from .ir import ConfigLocation
from .utils import run_cmd, DEFAULT_TIMEOUT

logger = logging.getLogger(__name__)

DEFAULT_RELOAD = "systemctl reload nginx"


class NginxRuntime:
    def __init__(self, location: ConfigLocation, nginx_bin: str = "nginx",
                 reload_command: Sequence[str] = tuple(shlex.split(DEFAULT_RELOAD)),
                 timeout: float = DEFAULT_TIMEOUT):
        self.location = location
        self.nginx_bin = nginx_bin
        if isinstance(reload_command, str):
            reload_command = shlex.split(reload_command)
        self.reload_command = list(reload_command)
        self.timeout = timeout

    def check_config(self) -> Tuple[bool, str]:
        """Test the whole configuration set, starting from nginx.conf."""
        argv = [self.nginx_bin, "-t"]
        if self.location.main_conf.exists():
            argv += ["-c", str(self.location.main_conf)]
        r = run_cmd(argv, timeout=self.timeout)
        # nginx -t reports on stderr even when it succeeds
        return r.ok, r.diagnostic

    def reload(self) -> Tuple[bool, str]:
        """Graceful reload: workers finish in-flight requests on the old config."""
        r = run_cmd(self.reload_command, timeout=self.timeout)
        return r.ok, r.diagnostic

    def is_active(self) -> bool:
        return run_cmd(["systemctl", "is-active", "--quiet", "nginx"], timeout=self.timeout).ok
