import os
from pathlib import Path

import pytest

from narrowssh.config import (
    DEFAULT_AUTHORIZED_KEYS, Control, ControlManager, validate_control, visit_config_files,
)
from narrowssh.errors import ConfigError

UID = os.getuid()


def write(path: Path, text: str, mode=0o600):
    path.write_text(text)
    os.chmod(path, mode)
    return path


@pytest.fixture
def control(tmp_path):
    main = write(tmp_path / "control.yaml", "")
    ext = tmp_path / "control.yaml.d"
    ext.mkdir(mode=0o700)
    os.chmod(ext, 0o700)
    return main, ext


def test_visit_order(control):
    main, ext = control
    for name in ("10.yaml", "02.a.yaml", "01.yaml", "02-a.yaml", "a.a.yaml", "a.yaml", "notes.txt"):
        write(ext / name, "")

    seen = []
    visit_config_files(main, UID, lambda p: seen.append(p.name))

    assert seen == ["control.yaml", "01.yaml", "02-a.yaml", "02.a.yaml", "10.yaml", "a.yaml", "a.a.yaml"]


def test_missing_extension_dir_is_fine(tmp_path):
    main = write(tmp_path / "control.yaml", "")
    seen = []
    visit_config_files(main, UID, seen.append)
    assert seen == [main]


def test_missing_main_file(tmp_path):
    with pytest.raises(ConfigError):
        visit_config_files(tmp_path / "nope.yaml", UID, lambda p: None)


def test_group_readable_file_refused(control):
    main, _ = control
    os.chmod(main, 0o640)
    with pytest.raises(ConfigError, match=r"change to 600 \[security; refusing to proceed\]"):
        visit_config_files(main, UID, lambda p: None)


def test_loose_extension_dir_refused(control):
    main, ext = control
    os.chmod(ext, 0o755)
    with pytest.raises(ConfigError, match="security"):
        visit_config_files(main, UID, lambda p: None)


def test_extension_that_is_a_directory_refused(control):
    main, ext = control
    (ext / "sub.yaml").mkdir(mode=0o700)
    with pytest.raises(ConfigError, match="not a \\(symlink to a\\) regular file"):
        visit_config_files(main, UID, lambda p: None)


def test_wrong_owner_refused(control):
    main, _ = control
    with pytest.raises(ConfigError, match=f"must be owned by UID {UID + 1}"):
        visit_config_files(main, UID + 1, lambda p: None)


def test_load_users(control):
    main, ext = control
    write(main, """
"*":
  lock_timeout: 3
1000:
  enable: true
"1001":
  enable: true
  registry: /var/lib/narrowssh/1001.db
deploy:
  enable: true
  authorized_keys: /srv/deploy/.ssh/authorized_keys
""")
    write(ext / "50-override.yaml", """
deploy:
  enable: false
"*":
  enable: false
""")

    cm = ControlManager.load(str(main), owner=UID, uid_lookup={"deploy": 2000}.__getitem__)

    assert cm.get_user_control(1000) == Control(enable=True, lock_timeout=3)
    assert cm.get_user_control(1001).registry == "/var/lib/narrowssh/1001.db"
    deploy = cm.get_user_control(2000)
    assert deploy.enable is False
    assert deploy.authorized_keys == "/srv/deploy/.ssh/authorized_keys"
    assert deploy.lock_timeout == 3
    assert cm.get_user_control(4242) == Control(lock_timeout=3)


def test_unknown_user_name(control):
    main, _ = control
    write(main, "no-such-user-for-narrowssh-tests:\n  enable: true\n")
    with pytest.raises(ConfigError, match="unknown user"):
        ControlManager.load(str(main), owner=UID)


@pytest.mark.parametrize("text", [
    "- a\n- b\n",
    "key: [unclosed\n",
    "'*':\n  - enable\n",
    "'*':\n  enable: 1\n",
    "'*':\n  colour: blue\n",
])
def test_malformed_files(control, text):
    main, _ = control
    write(main, text)
    with pytest.raises(ConfigError):
        ControlManager.load(str(main), owner=UID)


@pytest.mark.parametrize("data", [
    {"enable": "yes"},
    {"lock_timeout": -1},
    {"lock_timeout": True},
    {"lock_timeout": "soon"},
    {"authorized_keys": ""},
    {"authorized_keys": "relative/path"},
    {"registry": "/var/lib/narrowssh/"},
    {"registry": 12},
])
def test_invalid_settings(data):
    with pytest.raises(ConfigError):
        validate_control(data, "test")


def test_valid_settings():
    data = {"enable": True, "lock_timeout": 2.5, "authorized_keys": "~/.ssh/authorized_keys2",
            "registry": "/var/lib/narrowssh/registry.db"}
    assert validate_control(data, "test") == data


def test_resolve_expands_against_user_home():
    resolved = Control(registry="~", authorized_keys=DEFAULT_AUTHORIZED_KEYS).resolve("/home/bob")
    assert resolved.authorized_keys == "/home/bob/.ssh/authorized_keys"
    assert resolved.registry == "/home/bob"
    assert Control(registry="/abs/r.db").resolve("/home/bob").registry == "/abs/r.db"


def test_load_if_present_without_file(tmp_path, monkeypatch):
    monkeypatch.setenv("NARROWSSH_CONTROL", str(tmp_path / "missing.yaml"))
    cm = ControlManager.load_if_present()
    assert cm.get_user_control(UID) == Control()


def test_empty_file_gives_defaults(control):
    main, _ = control
    cm = ControlManager.load(str(main), owner=UID)
    assert cm.get_user_control(0) == Control()
