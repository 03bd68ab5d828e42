from datetime import datetime, timedelta, timezone

import pytest

from narrowssh.crypto import generate_keypair


class FakeClock:
    def __init__(self, start):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc))


@pytest.fixture(scope="session")
def ed25519_pub():
    pub, _ = generate_keypair("ed25519", comment="alice@laptop")
    return pub


@pytest.fixture
def make_pub():
    """Fresh public key line per call."""
    def _make(comment="test"):
        pub, _ = generate_keypair("ed25519", comment=comment)
        return pub
    return _make
