"""Fixtures for dispatch tests: a scripted Connection that records what is sent."""

import pytest

from remote_promises.transports import Connection


class FakeConnection(Connection):
    """Connection double; ``sent`` collects outgoing messages."""

    def __init__(self, connection_id=None):
        super().__init__(connection_id)
        self.sent = []
        self.is_connected = True

    @property
    def connected(self):
        return self.is_connected

    def send(self, message):
        self.sent.append(message)

    async def close(self):
        self.is_connected = False


@pytest.fixture
def make_connection():
    """Factory for :class:`FakeConnection` instances."""
    return FakeConnection
