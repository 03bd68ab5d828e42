"""
narrowssh.paths
---------------
Filesystem access for files narrowssh writes on a user's behalf.

When root manages another user's files (`owner` is set), everything under
that user's home is hostile input: the final path component is never
followed through a symlink, the containing directory must belong to the
user, and an existing file must be a singly-linked regular file owned by
the user (or by root, from an earlier run) before anything is handed over.
"""

from __future__ import annotations
from contextlib import contextmanager
from typing import Iterator, Optional, Sequence, Tuple
import os, stat

from .errors import UnsafePath

Owner = Tuple[int, int]

SECURITY_SUFFIX = "[security; refusing to proceed]"
DIR_MODE = 0o700


def prepare_directory(directory: str, owner: Optional[Owner] = None) -> None:
    """Create a missing directory (0700, handed to `owner` if given)."""
    if os.path.isdir(directory):
        return
    try:
        os.makedirs(directory, mode=DIR_MODE)
    except FileExistsError:
        # lost a race with another process creating it
        return
    if owner is not None:
        os.chown(directory, *owner, follow_symlinks=False)


def open_dir(directory: str, uid: Optional[int] = None) -> int:
    """
    Open `directory` without following a symlink in its last component.

    With `uid`, the directory must belong to that user.
    """
    fd = os.open(directory, os.O_RDONLY | os.O_DIRECTORY | os.O_NOFOLLOW)
    try:
        st = os.fstat(fd)
    except OSError:
        os.close(fd)
        raise
    if uid is not None and st.st_uid != uid:
        os.close(fd)
        raise UnsafePath(f"{directory}: owned by UID {st.st_uid}, expected {uid} {SECURITY_SUFFIX}")
    return fd


def check_owned_file(st: os.stat_result, path: str, uid: int) -> None:
    if not stat.S_ISREG(st.st_mode):
        raise UnsafePath(f"{path}: not a regular file {SECURITY_SUFFIX}")
    if st.st_nlink != 1:
        raise UnsafePath(f"{path}: has {st.st_nlink} hard links {SECURITY_SUFFIX}")
    if st.st_uid not in (uid, 0):
        raise UnsafePath(f"{path}: owned by UID {st.st_uid}, expected {uid} {SECURITY_SUFFIX}")


def open_private(path: str, owner: Optional[Owner] = None,
                 flags: int = os.O_RDWR | os.O_CREAT) -> int:
    """
    Open (by default create) `path` with mode 0600, never through a symlink.

    With `owner`, the ownership checks above apply and the file is then
    fchown'd to `owner`. Raises OSError or UnsafePath; no descriptor leaks.
    """
    directory, name = os.path.split(path)
    dfd = open_dir(directory or ".", owner[0] if owner else None)
    try:
        fd = os.open(name, flags | os.O_NOFOLLOW, 0o600, dir_fd=dfd)
    finally:
        os.close(dfd)
    if owner is None:
        return fd
    try:
        check_owned_file(os.fstat(fd), path, owner[0])
        os.fchown(fd, *owner)
    except BaseException:
        os.close(fd)
        raise
    return fd


def claim_file(path: str, owner: Owner) -> None:
    """Create `path` if missing and hand it to `owner`, with the checks of open_private."""
    os.close(open_private(path, owner))


@contextmanager
def acting_as(owner: Optional[Owner], groups: Sequence[int] = ()) -> Iterator[None]:
    """
    Run the block with the effective uid, gid and groups of `owner`.

    Used by root while it works inside another user's home, so that the
    kernel's own permission checks apply on top of the ones above. No-op when
    `owner` is None. Only the effective ids change; they are restored on exit.
    """
    if owner is None:
        yield
        return
    saved = os.geteuid(), os.getegid(), os.getgroups()
    os.setgroups(list(groups) or [owner[1]])
    os.setegid(owner[1])
    os.seteuid(owner[0])
    try:
        yield
    finally:
        os.seteuid(saved[0])
        os.setegid(saved[1])
        os.setgroups(saved[2])
