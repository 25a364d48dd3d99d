# health.py
# Post-deploy checks: upstream endpoints answer, backend /health says ok,
# and the proxy service is running.

import logging
import time
from typing import Callable, List, Optional

import requests

logger = logging.getLogger(__name__)

MAX_RETRIES = 5
RETRY_DELAY = 5
REQUEST_TIMEOUT = 5


def check_url(name: str, url: str, retries: int = MAX_RETRIES, delay: float = RETRY_DELAY,
              session: Optional[requests.Session] = None,
              sleep: Callable[[float], None] = time.sleep) -> bool:
    http = session or requests.Session()
    logger.info(f"Checking {name}... ({url})")
    for attempt in range(1, retries + 1):
        try:
            r = http.get(url, timeout=REQUEST_TIMEOUT)
            if r.ok:
                logger.info(f"   {name} is healthy")
                return True
            logger.info(f"   Attempt {attempt}/{retries}: HTTP {r.status_code}")
        except requests.RequestException as e:
            logger.info(f"   Attempt {attempt}/{retries} failed: {e.__class__.__name__}")
        if attempt < retries:
            sleep(delay)
    logger.error(f"   {name} is NOT healthy after {retries} attempts")
    return False


def backend_status(url: str, session: Optional[requests.Session] = None) -> Optional[str]:
    """Return the `status` field of the backend health response, None if unreadable."""
    http = session or requests.Session()
    try:
        r = http.get(url, timeout=REQUEST_TIMEOUT)
        r.raise_for_status()
        return str(r.json().get("status"))
    except (requests.RequestException, ValueError, AttributeError):
        return None


def run_checks(frontend_url: str, backend_url: str, proxy_active: Callable[[], bool],
               retries: int = MAX_RETRIES, delay: float = RETRY_DELAY,
               session: Optional[requests.Session] = None,
               sleep: Callable[[float], None] = time.sleep) -> List[dict]:
    http = session or requests.Session()
    health_url = backend_url.rstrip("/") + "/health"
    checks = [
        {"check": "frontend", "target": frontend_url,
         "ok": check_url("Frontend", frontend_url, retries, delay, http, sleep), "required": True},
        {"check": "backend", "target": health_url,
         "ok": check_url("Backend", health_url, retries, delay, http, sleep), "required": True},
    ]
    status = backend_status(health_url, http)
    if status is None:
        logger.error("   Could not get health response")
    elif status != "ok":
        logger.warning(f"   Backend responded but status is '{status}'")
    checks.append({"check": "backend-status", "target": health_url, "ok": status == "ok", "required": False})

    active = proxy_active()
    logger.info(f"Nginx is {'running' if active else 'NOT running'}")
    checks.append({"check": "nginx", "target": "nginx.service", "ok": active, "required": True})
    return checks


def all_passed(checks: List[dict]) -> bool:
    """A non-ok backend status is only a warning."""
    return all(c["ok"] for c in checks if c["required"])
