"""
narrowssh.errors
----------------
Exception taxonomy shared by every narrowssh component.

Each component raises from its own family so callers can decide what is
per-key (PolicyError), what aborts an operation (ReconcileError, LockError,
StoreIoError) and what is worth retrying (LockBusy).
"""

from __future__ import annotations


class NarrowSSHError(Exception):
    retryable: bool = False


# --------- Policy engine ----------
class PolicyError(NarrowSSHError):
    pass


class InvalidCommand(PolicyError):
    pass


class UnsupportedRestriction(PolicyError):
    pass


# --------- Key registry ----------
class RegistryError(NarrowSSHError):
    pass


class InvalidPublicKey(RegistryError):
    pass


class DuplicateKey(RegistryError):
    pass


class NotFound(RegistryError):
    pass


class AlreadyRevoked(NotFound):
    """The key exists but was revoked earlier."""


class KeyExpired(RegistryError):
    pass


class StoreIoError(RegistryError):
    pass


# --------- Section reconciler ----------
class ReconcileError(NarrowSSHError):
    pass


class CorruptSection(ReconcileError):
    pass


class ReconcileIoError(ReconcileError):
    pass


class CrossDeviceError(ReconcileError):
    pass


# --------- Concurrency guard ----------
class LockError(NarrowSSHError):
    pass


class LockBusy(LockError):
    retryable = True


class LockIoError(LockError):
    pass


# --------- Configuration ----------
class ConfigError(NarrowSSHError):
    pass


# --------- Filesystem ownership ----------
class UnsafePath(NarrowSSHError):
    """A path under a managed user's control does not look like ours; nothing was touched."""
