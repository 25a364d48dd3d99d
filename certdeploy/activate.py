# activate.py
# Snapshot -> write -> validate -> reload, rolling back to the snapshot when
# the configuration test or the reload fails.
#
#   Pending -> Validating -> Active
#                         -> RolledBack

import logging
import os
from pathlib import Path
from typing import Dict, Iterable

from .errors import ValidationError
from .ir import ActivationResult, ActivationState, ConfigLocation, ConfigSnapshot, RenderedConfig
from .nginx import NginxRuntime
from .snapshots import config_lock, restore, snapshot

logger = logging.getLogger(__name__)


def _write_atomic(path: Path, text: str):
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f".{path.name}.tmp")
    with open(tmp, "w", encoding="utf-8") as f:
        f.write(text)
    os.chmod(tmp, 0o644)
    os.replace(tmp, path)


def _validate(runtime: NginxRuntime):
    ok, diagnostic = runtime.check_config()
    if not ok:
        raise ValidationError(diagnostic)
    logger.info("   Configuration syntax is valid")


def _roll_back(snap, location, diagnostic, written) -> ActivationResult:
    logger.error("   Restoring backup...")
    # RestoreError is fatal and goes straight to the caller
    restore(snap, location, checker_output=diagnostic)
    logger.warning("   Backup restored. The previous configuration remains active "
                   "and is serving traffic unchanged.")
    return ActivationResult(False, ActivationState.ROLLED_BACK, snap, written, diagnostic)


def _validate_and_reload(snap, location, runtime, written, reload=True) -> ActivationResult:
    logger.info("   Testing configuration syntax...")
    try:
        _validate(runtime)
    except ValidationError as e:
        logger.error("   Configuration syntax error!")
        for line in e.diagnostic.splitlines():
            logger.error(f"   {line}")
        return _roll_back(snap, location, e.diagnostic, written)

    if not reload:
        logger.info("   Reload skipped")
        return ActivationResult(True, ActivationState.ACTIVE, snap, written, "")

    logger.info("   Reloading Nginx...")
    ok, diagnostic = runtime.reload()
    if not ok:
        logger.error(f"   Reload failed: {diagnostic}")
        result = _roll_back(snap, location, f"reload failed: {diagnostic}", written)
        # a timed-out reload may still have reached nginx
        ok, again = runtime.reload()
        if ok:
            logger.info("   Nginx reloaded with the restored configuration")
        else:
            logger.error(f"   Reload of the restored configuration failed too: {again}")
        return result

    logger.info("   Nginx reloaded successfully")
    return ActivationResult(True, ActivationState.ACTIVE, snap, written, diagnostic)


def apply_changes(location: ConfigLocation, runtime: NginxRuntime,
                  writes: Dict[Path, str], removes: Iterable[Path] = ()) -> ActivationResult:
    """Apply file changes under `location` as one unit."""
    with config_lock(location):
        snap = snapshot(location)

        written = []
        try:
            for path, text in writes.items():
                _write_atomic(path, text)
                written.append(path)
                logger.info(f"   Wrote: {path}")
            for path in removes:
                if path.exists():
                    path.unlink()
                    logger.info(f"   Removed: {path}")
        except OSError as e:
            logger.error(f"   Could not write configuration: {e}")
            return _roll_back(snap, location, f"write failed: {e}", written)

        return _validate_and_reload(snap, location, runtime, written)


def activate(rendered: RenderedConfig, location: ConfigLocation,
             runtime: NginxRuntime) -> ActivationResult:
    return apply_changes(location, runtime, {location.site_path(rendered.name): rendered.text})


def restore_snapshot(target: ConfigSnapshot, location: ConfigLocation, runtime: NginxRuntime,
                     reload: bool = True) -> ActivationResult:
    """Make `target` the live configuration. The current state is snapshotted
    first and comes back if the restored files fail the test or the reload."""
    with config_lock(location):
        snap = snapshot(location)
        logger.info(f"   Restoring {target.name}...")
        restore(target, location)
        written = [location.conf_dir, location.main_conf]
        return _validate_and_reload(snap, location, runtime, written, reload=reload)
