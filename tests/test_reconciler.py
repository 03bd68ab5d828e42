import errno
import os
import stat

import pytest

from narrowssh import reconciler
from narrowssh.errors import CorruptSection, CrossDeviceError, ReconcileIoError, UnsafePath
from narrowssh.reconciler import installed_lines, reconcile, remove_section
from narrowssh.section import DEFAULT_MARKERS


def mode(path):
    return stat.S_IMODE(os.stat(path).st_mode)


def leftovers(directory):
    return [p for p in os.listdir(directory) if p.endswith(".tmp")]


def test_creates_missing_file_and_directory(tmp_path):
    target = tmp_path / "home" / ".ssh" / "authorized_keys"

    assert reconcile(str(target), ["line-a"]) is True

    assert target.read_bytes() == DEFAULT_MARKERS.begin + b"\nline-a\n" + DEFAULT_MARKERS.end + b"\n"
    assert mode(target) == 0o600
    assert mode(target.parent) == 0o700


def test_second_run_is_a_no_op(tmp_path):
    target = tmp_path / "authorized_keys"
    reconcile(str(target), ["a", "b"])
    before = os.stat(target)

    assert reconcile(str(target), ["a", "b"]) is False
    assert os.stat(target).st_ino == before.st_ino


def test_foreign_bytes_survive(tmp_path):
    target = tmp_path / "authorized_keys"
    prefix = b"ssh-ed25519 AAAAC3 me@host\n# \xc3\x28 not utf-8\n"
    suffix = b"ssh-rsa AAAAB3 tail-without-newline"
    target.write_bytes(prefix + DEFAULT_MARKERS.begin + b"\nold\n" + DEFAULT_MARKERS.end + b"\n" + suffix)

    reconcile(str(target), ["new-1", "new-2"])

    data = target.read_bytes()
    assert data.startswith(prefix)
    assert data.endswith(DEFAULT_MARKERS.end + b"\n" + suffix)
    assert installed_lines(str(target)) == ["new-1", "new-2"]


def test_loose_permissions_are_fixed_even_without_content_change(tmp_path):
    target = tmp_path / "authorized_keys"
    reconcile(str(target), ["a"])
    os.chmod(target, 0o644)

    assert reconcile(str(target), ["a"]) is True
    assert mode(target) == 0o600


def test_failed_rename_leaves_target_untouched(tmp_path, monkeypatch):
    target = tmp_path / "authorized_keys"
    target.write_bytes(b"original\n")

    def boom(src, dst, **kwargs):
        raise OSError(errno.EIO, "I/O error")
    monkeypatch.setattr(reconciler.os, "replace", boom)

    with pytest.raises(ReconcileIoError):
        reconcile(str(target), ["a"])
    assert target.read_bytes() == b"original\n"
    assert leftovers(tmp_path) == []


def test_failed_fsync_leaves_target_untouched(tmp_path, monkeypatch):
    target = tmp_path / "authorized_keys"
    target.write_bytes(b"original\n")

    def boom(fd):
        raise OSError(errno.EIO, "fsync failed")
    monkeypatch.setattr(reconciler.os, "fsync", boom)

    with pytest.raises(ReconcileIoError):
        reconcile(str(target), ["a"])
    assert target.read_bytes() == b"original\n"
    assert leftovers(tmp_path) == []


def test_corrupt_section_is_not_repaired(tmp_path):
    target = tmp_path / "authorized_keys"
    broken = b"keep\n" + DEFAULT_MARKERS.begin + b"\nno end marker\n"
    target.write_bytes(broken)

    with pytest.raises(CorruptSection):
        reconcile(str(target), ["a"])
    assert target.read_bytes() == broken


def test_cross_device_tmp_dir_is_refused(tmp_path, monkeypatch):
    home = tmp_path / "home"
    scratch = tmp_path / "scratch"
    home.mkdir()
    scratch.mkdir()
    target = home / "authorized_keys"
    target.write_bytes(b"original\n")
    monkeypatch.setattr(reconciler, "_device_of", lambda p: 2 if p == str(scratch) else 1)

    with pytest.raises(CrossDeviceError):
        reconcile(str(target), ["a"], tmp_dir=str(scratch))
    assert target.read_bytes() == b"original\n"
    assert os.listdir(scratch) == []


def test_exdev_on_rename_is_cross_device(tmp_path, monkeypatch):
    target = tmp_path / "authorized_keys"

    def exdev(src, dst, **kwargs):
        raise OSError(errno.EXDEV, "Invalid cross-device link")
    monkeypatch.setattr(reconciler.os, "replace", exdev)

    with pytest.raises(CrossDeviceError):
        reconcile(str(target), ["a"])
    assert not target.exists()
    assert leftovers(tmp_path) == []


def test_symlinked_target_is_followed(tmp_path):
    real = tmp_path / "real" / "keys"
    real.parent.mkdir()
    real.write_bytes(b"mine\n")
    link = tmp_path / "authorized_keys"
    link.symlink_to(real)

    reconcile(str(link), ["a"])

    assert link.is_symlink()
    assert real.read_bytes().startswith(b"mine\n" + DEFAULT_MARKERS.begin)


def test_remove_section(tmp_path):
    target = tmp_path / "authorized_keys"
    target.write_bytes(b"mine\n")
    reconcile(str(target), ["a"])

    assert remove_section(str(target)) is True
    assert target.read_bytes() == b"mine\n"
    assert remove_section(str(target)) is False
    assert remove_section(str(tmp_path / "missing")) is False


def test_installed_lines_without_section(tmp_path):
    target = tmp_path / "authorized_keys"
    assert installed_lines(str(target)) == []
    target.write_bytes(b"mine\n")
    assert installed_lines(str(target)) == []


def test_temp_file_is_private_before_rename(tmp_path, monkeypatch):
    target = tmp_path / "authorized_keys"
    real_replace = os.replace
    seen = []

    def checked(src, dst, **kwargs):
        seen.append(stat.S_IMODE(os.stat(src, dir_fd=kwargs["src_dir_fd"]).st_mode))
        return real_replace(src, dst, **kwargs)
    monkeypatch.setattr(reconciler.os, "replace", checked)

    reconcile(str(target), ["a"])
    assert seen == [0o600]


def test_own_uid_as_owner(tmp_path):
    owner = (os.getuid(), os.getgid())
    target = tmp_path / ".ssh" / "authorized_keys"

    assert reconcile(str(target), ["a"], owner=owner) is True
    assert reconcile(str(target), ["a"], owner=owner) is False
    assert (target.stat().st_uid, target.stat().st_gid) == owner


def test_directory_of_someone_else_is_refused(tmp_path):
    target = tmp_path / "authorized_keys"
    target.write_bytes(b"original\n")

    with pytest.raises(UnsafePath):
        reconcile(str(target), ["a"], owner=(os.getuid() + 1, os.getgid()))
    assert target.read_bytes() == b"original\n"


def test_hard_linked_target_is_refused(tmp_path):
    victim = tmp_path / "victim"
    victim.write_bytes(b"secret\n")
    target = tmp_path / "authorized_keys"
    os.link(victim, target)

    with pytest.raises(UnsafePath):
        reconcile(str(target), ["a"], owner=(os.getuid(), os.getgid()))
    assert victim.read_bytes() == b"secret\n"
    assert leftovers(tmp_path) == []


def test_non_regular_target_is_refused(tmp_path):
    target = tmp_path / "authorized_keys"
    os.mkfifo(target)

    with pytest.raises(UnsafePath):
        reconcile(str(target), ["a"], owner=(os.getuid(), os.getgid()))
    assert stat.S_ISFIFO(os.lstat(target).st_mode)


@pytest.mark.skipif(os.geteuid() != 0, reason="needs root")
def test_symlink_to_root_file_is_refused_for_owner(tmp_path):
    victim_dir = tmp_path / "etc"
    victim_dir.mkdir()
    victim = victim_dir / "shadow"
    victim.write_bytes(b"root:x\n")
    home = tmp_path / "home"
    (home / ".ssh").mkdir(parents=True)
    os.chown(home / ".ssh", 1234, 1234)
    link = home / ".ssh" / "authorized_keys"
    link.symlink_to(victim)

    with pytest.raises(UnsafePath):
        reconcile(str(link), ["a"], owner=(1234, 1234))
    assert victim.read_bytes() == b"root:x\n"
    assert victim.stat().st_uid == 0


@pytest.mark.skipif(os.geteuid() != 0, reason="needs root")
def test_owner_receives_the_file(tmp_path):
    ssh = tmp_path / ".ssh"
    ssh.mkdir()
    os.chown(ssh, 1234, 1234)
    target = ssh / "authorized_keys"

    reconcile(str(target), ["a"], owner=(1234, 1234))
    assert (target.stat().st_uid, target.stat().st_gid) == (1234, 1234)
    assert mode(target) == 0o600
