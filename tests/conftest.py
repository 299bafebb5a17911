import pytest
import pytest_asyncio

from fakes import PeerFactory, SpySocket
from vrdrive_link.negotiation import PeerNegotiationEngine
from vrdrive_link.signaling import SignalingRelay


@pytest.fixture
def spy_socket():
    return SpySocket()


@pytest.fixture
def relay(spy_socket):
    relay = SignalingRelay(spy_socket)
    yield relay
    relay.close()


@pytest.fixture
def peer_factory():
    return PeerFactory()


@pytest_asyncio.fixture
async def engine(relay, peer_factory):
    engine = PeerNegotiationEngine(relay, peer_factory=peer_factory)
    yield engine
    await engine.close()


class Recorder:
    """Collects every emission of the signals it is connected to."""
    def __init__(self):
        self.calls: list[tuple[str, tuple]] = []

    def listen(self, signal):
        signal.connect(lambda *args: self.calls.append((signal.name, args)))
        return self

    def of(self, name: str) -> list[tuple]:
        return [args for n, args in self.calls if n == name]

    def names(self) -> list[str]:
        return [n for n, _ in self.calls]


@pytest.fixture
def recorder():
    return Recorder()
