"""
narrowssh.config
----------------
Control files: which users narrowssh manages and where their files live.

    /etc/narrowssh/control.yaml          main file
    /etc/narrowssh/control.yaml.d/*.yaml extensions, applied in name order

Each top-level key is a username, a numeric uid, or "*" for the defaults of
every other user:

    "*":
      enable: false
    deploy:
      enable: true
      authorized_keys: /srv/deploy/.ssh/authorized_keys
      registry: ~/.narrowssh/registry.db
      lock_timeout: 5

Files (and the .d directory) must be owned by the expected owner and carry
no group or world permission bits; anything else aborts loading.
"""

from __future__ import annotations
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Callable, Dict, Optional
import os, pwd, stat

import yaml

from .errors import ConfigError
from .logger import get_logger
from .paths import SECURITY_SUFFIX

log = get_logger("narrowssh.config")

DEFAULT_CONTROL_FILE = "/etc/narrowssh/control.yaml"
DEFAULT_AUTHORIZED_KEYS = "~/.ssh/authorized_keys"
DEFAULT_REGISTRY = "~/.narrowssh/registry.db"
DEFAULT_LOCK_TIMEOUT = 10.0

_PATH_FIELDS = ("authorized_keys", "registry")


def control_file_path() -> str:
    return os.getenv("NARROWSSH_CONTROL", DEFAULT_CONTROL_FILE)


def _perm_check(path: Path, owner: int, expect_dir: bool) -> None:
    try:
        st = path.stat()  # follows symlinks
    except OSError as exc:
        raise ConfigError(f"cannot stat {path}: {exc}") from exc

    if expect_dir and not stat.S_ISDIR(st.st_mode):
        raise ConfigError(f"{path}: not a (symlink to a) directory {SECURITY_SUFFIX}")
    if not expect_dir and not stat.S_ISREG(st.st_mode):
        raise ConfigError(f"{path}: not a (symlink to a) regular file {SECURITY_SUFFIX}")

    mode = st.st_mode & 0o777
    if mode & 0o077:
        raise ConfigError(
            f"{path}: file has permissions {mode:o}, change to {mode & 0o700:o} {SECURITY_SUFFIX}"
        )
    if st.st_uid != owner:
        raise ConfigError(f"{path}: must be owned by UID {owner}, not {st.st_uid} {SECURITY_SUFFIX}")


def visit_config_files(file, owner: int, consumer: Callable[[Path], None]) -> None:
    """
    Check and hand `file`, then the files of `{file}.d`, to `consumer`.

    When `file` has an extension, only files with the same extension are
    taken from `{file}.d`, sorted by name without the extension so that
    `a.yaml` comes before `a.a.yaml`. A missing `.d` directory is fine.
    Checks run lazily: consumer may already have seen earlier files when a
    later one fails.
    """
    main = Path(file)
    _perm_check(main, owner, expect_dir=False)
    consumer(main)

    ext_dir = main.with_name(main.name + ".d")
    try:
        entries = list(ext_dir.iterdir())
    except FileNotFoundError:
        return
    except OSError as exc:
        raise ConfigError(f"listing extensions in {ext_dir}: {exc}") from exc

    if main.suffix:
        entries = [p for p in entries if p.suffix == main.suffix]
        entries.sort(key=lambda p: p.with_suffix(""))
    else:
        entries.sort()

    _perm_check(ext_dir, owner, expect_dir=True)
    for entry in entries:
        _perm_check(entry, owner, expect_dir=False)
        consumer(entry)


@dataclass
class Control:
    """Settings for one user."""
    enable: bool = False
    authorized_keys: str = DEFAULT_AUTHORIZED_KEYS
    registry: str = DEFAULT_REGISTRY
    lock_timeout: float = DEFAULT_LOCK_TIMEOUT

    def fill_from(self, data: Dict[str, Any]) -> None:
        for name, value in data.items():
            setattr(self, name, value)

    def expand(self, path: str, home: str) -> str:
        if path == "~" or path.startswith("~/"):
            return os.path.join(home, path[2:]) if path != "~" else home
        return os.path.expanduser(path)

    def resolve(self, home: str) -> "Control":
        """Copy with every `~` path expanded against `home`."""
        return Control(
            enable=self.enable,
            authorized_keys=self.expand(self.authorized_keys, home),
            registry=self.expand(self.registry, home),
            lock_timeout=self.lock_timeout,
        )


_FIELD_TYPES = {f.name: f.type for f in fields(Control)}


def validate_control(data: Any, where: str) -> Dict[str, Any]:
    if not isinstance(data, dict):
        raise ConfigError(f"{where}: expected a mapping of settings")
    for name, value in data.items():
        if name not in _FIELD_TYPES:
            raise ConfigError(f"{where}: unknown setting {name!r}")
        if name == "enable" and not isinstance(value, bool):
            raise ConfigError(f"{where}: 'enable' must be true or false")
        if name == "lock_timeout":
            if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
                raise ConfigError(f"{where}: 'lock_timeout' must be a non-negative number")
        if name in _PATH_FIELDS:
            if not isinstance(value, str) or not value:
                raise ConfigError(f"{where}: {name!r} fields in control files must not be empty")
            if value[0] not in "/~":
                raise ConfigError(f"{where}: {name!r} fields in control files must begin with '/' or '~'")
            if value.endswith("/"):
                raise ConfigError(f"{where}: {name!r} fields in control files must not end with '/'")
    return dict(data)


def _uid_by_name(name: str) -> int:
    try:
        return pwd.getpwnam(name).pw_uid
    except KeyError:
        raise ConfigError(f"unknown user {name!r}") from None


class ControlManager:
    """Control settings for all users: per-user overrides on top of "*"."""

    def __init__(self, fallback: Optional[Control] = None):
        self.users: Dict[int, Dict[str, Any]] = {}
        self.fallback = fallback or Control()

    @classmethod
    def load(cls, path: Optional[str] = None, owner: int = 0,
             uid_lookup: Callable[[str], int] = _uid_by_name) -> "ControlManager":
        """
        Read the main control file and its extensions.

        Fails with ConfigError if any file is unreadable, is not YAML, is not
        shaped like a control file, or fails the ownership/permission checks.
        """
        result = cls()
        path = path or control_file_path()

        def process(file: Path) -> None:
            log.info(f"[CONFIG] reading control {file}")
            try:
                with open(file, "r", encoding="utf-8") as fh:
                    content = yaml.safe_load(fh) or {}
            except (OSError, yaml.YAMLError) as exc:
                raise ConfigError(f"loading {file}: {exc}") from exc
            if not isinstance(content, dict):
                raise ConfigError(f"loading {file}: root must be a mapping of users")

            for user, data in content.items():
                data = validate_control(data, f"{file} [{user}]")
                if user == "*":
                    result.fallback.fill_from(data)
                    continue
                if isinstance(user, int) and not isinstance(user, bool):
                    uid = user
                elif isinstance(user, str) and user.isdigit():
                    uid = int(user)
                elif isinstance(user, str):
                    uid = uid_lookup(user)
                else:
                    raise ConfigError(f"loading {file}: invalid user key {user!r}")
                result.users.setdefault(uid, {}).update(data)

        visit_config_files(path, owner, process)
        return result

    @classmethod
    def load_if_present(cls, path: Optional[str] = None, owner: int = 0) -> "ControlManager":
        path = path or control_file_path()
        if not os.path.lexists(path):
            log.debug(f"[CONFIG] no control file at {path}; using defaults")
            return cls()
        return cls.load(path, owner=owner)

    def get_user_control(self, uid: int) -> Control:
        result = Control(**{f.name: getattr(self.fallback, f.name) for f in fields(Control)})
        result.fill_from(self.users.get(uid, {}))
        return result
