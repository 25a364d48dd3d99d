# snapshots.py
# Rollback manager: full copies of the live configuration under
# <root>/backup-<timestamp>/, and the advisory lock that serialises runs.
# Snapshots are never pruned; removing old ones is left to the operator.

import fcntl
import logging
import os
import shutil
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import List

from .errors import PreconditionError, RestoreError
from .ir import ConfigLocation, ConfigSnapshot
from .utils import ts_compact

logger = logging.getLogger(__name__)

PREFIX = "backup-"
TS_FORMAT = "%Y%m%d-%H%M%S"


@contextmanager
def config_lock(location: ConfigLocation):
    """Exclusive, non-blocking lock over `location` for the duration of a run."""
    location.root.mkdir(parents=True, exist_ok=True)
    fh = open(location.lock_path, "a+")
    try:
        fcntl.flock(fh.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
    except BlockingIOError:
        fh.close()
        raise PreconditionError(
            f"another provisioning run holds {location.lock_path}; wait for it to finish")
    try:
        fh.seek(0)
        fh.truncate()
        fh.write(f"{os.getpid()}\n")
        fh.flush()
        yield location
    finally:
        fcntl.flock(fh.fileno(), fcntl.LOCK_UN)
        fh.close()


def _new_snapshot_dir(root: Path) -> Path:
    base = f"{PREFIX}{ts_compact()}"
    n = 0
    while True:
        p = root / (base if n == 0 else f"{base}.{n}")
        try:
            p.mkdir()
            return p
        except FileExistsError:
            n += 1


def _created_at(p: Path) -> datetime:
    stamp = p.name[len(PREFIX):].split(".", 1)[0]
    try:
        return datetime.strptime(stamp, TS_FORMAT)
    except ValueError:
        return datetime.fromtimestamp(p.stat().st_mtime)


def snapshot(location: ConfigLocation) -> ConfigSnapshot:
    """Copy conf.d (recursively) and nginx.conf into a fresh backup directory."""
    location.root.mkdir(parents=True, exist_ok=True)
    dest = _new_snapshot_dir(location.root)
    snap = ConfigSnapshot(path=dest, created_at=_created_at(dest))
    try:
        if location.conf_dir.is_dir():
            shutil.copytree(location.conf_dir, snap.conf_dir, symlinks=True)
        else:
            snap.conf_dir.mkdir()
        if location.main_conf.is_file():
            shutil.copy2(location.main_conf, snap.main_conf)
    except OSError as e:
        shutil.rmtree(dest, ignore_errors=True)
        raise PreconditionError(f"could not snapshot {location.root}: {e}") from e
    logger.info(f"Backup created at: {dest}")
    return snap


def restore(snap: ConfigSnapshot, location: ConfigLocation, checker_output: str = "") -> None:
    """Replace the live conf.d and nginx.conf with the snapshot's copies.
    Files added since the snapshot are dropped. conf.d is swapped in with
    renames so the directory is never half-copied."""
    staging = location.root / ".conf.d.restore"
    discard = location.root / ".conf.d.discard"
    try:
        if not snap.conf_dir.is_dir():
            raise FileNotFoundError(f"{snap.conf_dir} is missing")
        for p in (staging, discard):
            if p.exists():
                shutil.rmtree(p)
        shutil.copytree(snap.conf_dir, staging, symlinks=True)

        if snap.main_conf.is_file():
            tmp = location.root / ".nginx.conf.restore"
            shutil.copy2(snap.main_conf, tmp)
            os.replace(tmp, location.main_conf)
        elif location.main_conf.exists():
            location.main_conf.unlink()

        if location.conf_dir.exists():
            os.rename(location.conf_dir, discard)
        os.rename(staging, location.conf_dir)
        shutil.rmtree(discard, ignore_errors=True)
    except OSError as e:
        raise RestoreError(snap.path, location.root, e, checker_output) from e
    logger.info(f"Restored configuration from {snap.path}")


def list_snapshots(location: ConfigLocation) -> List[ConfigSnapshot]:
    """Newest first."""
    if not location.root.is_dir():
        return []
    snaps = [ConfigSnapshot(path=p, created_at=_created_at(p))
             for p in location.root.glob(f"{PREFIX}*") if p.is_dir()]
    return sorted(snaps, key=lambda s: (s.created_at, s.name), reverse=True)


def find_snapshot(location: ConfigLocation, name: str) -> ConfigSnapshot:
    p = location.root / name
    if not (name.startswith(PREFIX) and p.is_dir()):
        raise PreconditionError(f"no snapshot named {name} under {location.root}")
    return ConfigSnapshot(path=p, created_at=_created_at(p))
