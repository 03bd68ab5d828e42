"""
narrowssh.reconciler
--------------------
Converges the managed section of an authorized_keys file.

The file is never edited in place: new content goes to a 0600 temporary file
next to the target, is fsync'd, and is renamed over the target. sshd (or
anyone else) reading the file sees either the old or the new content, never
a mix. Callers hold the file lock (narrowssh.lock) around reconcile().

Everything after the initial path resolution goes through a descriptor of
the target's directory, and the target itself is never opened through a
symlink, so a path swapped underneath us fails instead of redirecting the
write (see narrowssh.paths for the checks applied when `owner` is set).
"""

from __future__ import annotations
import errno, os
from contextlib import contextmanager
from typing import Iterator, Optional, Sequence, Tuple

from .errors import CrossDeviceError, ReconcileIoError
from .logger import get_logger
from .paths import Owner, check_owned_file, open_dir, prepare_directory
from .section import DEFAULT_MARKERS, Markers, merge_section, split_section, strip_section
from .utils import new_id

log = get_logger("narrowssh.reconciler")

FILE_MODE = 0o600


def resolve_target(path: str) -> str:
    # Replace the real file, not a symlink pointing at it
    return os.path.realpath(os.path.expanduser(str(path)))


def read_content(target: str) -> Optional[bytes]:
    """Return the file bytes, or None when it does not exist."""
    try:
        fd = os.open(target, os.O_RDONLY | os.O_NOFOLLOW | os.O_NONBLOCK)
    except FileNotFoundError:
        return None
    except OSError as exc:
        raise ReconcileIoError(f"cannot read {target}: {exc}") from exc
    with os.fdopen(fd, "rb") as fh:
        return fh.read()


def _device_of(path: str) -> int:
    return os.stat(path).st_dev


@contextmanager
def _target_dir(target: str, owner: Optional[Owner]) -> Iterator[Tuple[int, str]]:
    """Yield (directory fd, file name) for `target`, creating the directory if needed."""
    directory, name = os.path.split(target)
    directory = directory or "."
    try:
        prepare_directory(directory, owner)
        dfd = open_dir(directory, owner[0] if owner else None)
    except OSError as exc:
        raise ReconcileIoError(f"cannot open {directory}: {exc}") from exc
    try:
        yield dfd, name
    finally:
        os.close(dfd)


def _read_at(dfd: int, name: str, target: str,
             owner: Optional[Owner]) -> Tuple[Optional[bytes], Optional[os.stat_result]]:
    try:
        # a FIFO planted here must not block us
        fd = os.open(name, os.O_RDONLY | os.O_NOFOLLOW | os.O_NONBLOCK, dir_fd=dfd)
    except FileNotFoundError:
        return None, None
    except OSError as exc:
        raise ReconcileIoError(f"cannot read {target}: {exc}") from exc
    with os.fdopen(fd, "rb") as fh:
        try:
            st = os.fstat(fh.fileno())
            if owner is not None:
                check_owned_file(st, target, owner[0])
            return fh.read(), st
        except OSError as exc:
            raise ReconcileIoError(f"cannot read {target}: {exc}") from exc


def _target_owner(st: Optional[os.stat_result], owner: Optional[Owner]) -> Optional[Owner]:
    if owner is not None:
        return owner
    if os.geteuid() != 0 or st is None:
        return None
    return st.st_uid, st.st_gid


def _is_settled(st: Optional[os.stat_result], owner: Optional[Owner]) -> bool:
    if st is None or st.st_mode & 0o777 != FILE_MODE:
        return False
    return owner is None or (st.st_uid, st.st_gid) == tuple(owner)


def _create_temp(tfd: int, name: str) -> Tuple[str, int]:
    while True:
        tmp = f".{name}.{new_id()[:12]}.tmp"
        try:
            return tmp, os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_EXCL | os.O_NOFOLLOW,
                                FILE_MODE, dir_fd=tfd)
        except FileExistsError:
            continue


def _discard(tmp: str, tfd: int) -> None:
    try:
        os.unlink(tmp, dir_fd=tfd)
    except FileNotFoundError:
        pass


def _replace_at(dfd: int, name: str, target: str, data: bytes,
                tmp_dir: Optional[str], owner: Optional[Owner]) -> None:
    """
    Replace `name` inside the directory `dfd` with `data` atomically.

    Raises CrossDeviceError when tmp_dir is on another filesystem (there is no
    copy fallback) and ReconcileIoError for any other failure. On failure the
    target is untouched and the temporary file is gone.
    """
    tfd = dfd
    if tmp_dir is not None:
        try:
            same_device = _device_of(tmp_dir) == _device_of(os.path.dirname(target) or ".")
            tfd = open_dir(tmp_dir)
        except OSError as exc:
            raise ReconcileIoError(f"cannot use temporary directory {tmp_dir}: {exc}") from exc
        if not same_device:
            os.close(tfd)
            raise CrossDeviceError(f"{tmp_dir} and {os.path.dirname(target)} are on different filesystems")

    try:
        try:
            tmp, fd = _create_temp(tfd, name)
        except OSError as exc:
            raise ReconcileIoError(f"cannot create temporary file for {target}: {exc}") from exc

        replaced = False
        try:
            with os.fdopen(fd, "wb") as fh:
                # permissions first, content second
                os.fchmod(fh.fileno(), FILE_MODE)
                if owner is not None:
                    os.fchown(fh.fileno(), *owner)
                fh.write(data)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp, name, src_dir_fd=tfd, dst_dir_fd=dfd)
            replaced = True
        except OSError as exc:
            if exc.errno == errno.EXDEV:
                raise CrossDeviceError(f"cannot rename {tmp} over {target}: {exc}") from exc
            raise ReconcileIoError(f"cannot write {target}: {exc}") from exc
        finally:
            if not replaced:
                _discard(tmp, tfd)
    finally:
        if tfd != dfd:
            os.close(tfd)

    try:
        os.fsync(dfd)
    except OSError as exc:
        raise ReconcileIoError(f"{target} was replaced but its directory could not be synced: {exc}") from exc


def reconcile(path: str, desired_lines: Sequence[str], tmp_dir: Optional[str] = None,
              markers: Markers = DEFAULT_MARKERS, owner: Optional[Owner] = None) -> bool:
    """
    Make the managed section of `path` hold exactly `desired_lines`.

    Returns True if the file was rewritten. A missing file is created.
    Raises CorruptSection, ReconcileIoError, CrossDeviceError or UnsafePath.
    """
    target = resolve_target(path)
    with _target_dir(target, owner) as (dfd, name):
        current, st = _read_at(dfd, name, target, owner)
        new = merge_section(current or b"", desired_lines, markers)

        if current == new and _is_settled(st, owner):
            log.debug(f"[RECONCILE] {target} already up to date")
            return False

        _replace_at(dfd, name, target, new, tmp_dir, _target_owner(st, owner))
    log.info(f"[RECONCILE] wrote {len(desired_lines)} managed line(s) to {target}")
    return True


def remove_section(path: str, tmp_dir: Optional[str] = None,
                   markers: Markers = DEFAULT_MARKERS, owner: Optional[Owner] = None) -> bool:
    """Drop the managed section entirely. Returns False if there was none."""
    target = resolve_target(path)
    if not os.path.lexists(target):
        return False
    with _target_dir(target, owner) as (dfd, name):
        current, st = _read_at(dfd, name, target, owner)
        if current is None:
            return False
        new = strip_section(current, markers)
        if new is None:
            return False
        _replace_at(dfd, name, target, new, tmp_dir, _target_owner(st, owner))
    log.info(f"[RECONCILE] removed managed section from {target}")
    return True


def installed_lines(path: str, markers: Markers = DEFAULT_MARKERS) -> list:
    """Lines currently inside the managed section (decoded, without newlines)."""
    current = read_content(resolve_target(path))
    if current is None:
        return []
    parts = split_section(current, markers)
    if parts is None:
        return []
    return [line.decode("utf-8", errors="replace").rstrip("\r\n") for line in parts[1]]
