"""
narrowssh
=========
Issue and manage SSH keys that may only run one forced command.

Provides:
- Restriction policy engine (forced command + options rendering)
- Key registry with issue / renew / revoke / expire / prune lifecycle
- Atomic, lock-guarded reconciliation of a managed authorized_keys section
"""

__version__ = "0.1.0"
