import pytest

from builders import FakeRepository, StubVerifier
from deblayer.config import RetryPolicy
from deblayer.events import Event


class EventRecorder:
    def __init__(self):
        self.events: list[Event] = []

    def __call__(self, event: Event) -> None:
        self.events.append(event)

    def kinds(self) -> list[str]:
        return [e.kind.value for e in self.events]

    def of(self, kind) -> list[Event]:
        return [e for e in self.events if e.kind == kind]


@pytest.fixture
def repo() -> FakeRepository:
    return FakeRepository()


@pytest.fixture
def verifier() -> StubVerifier:
    return StubVerifier()


@pytest.fixture
def events() -> EventRecorder:
    return EventRecorder()


@pytest.fixture
def retry() -> RetryPolicy:
    return RetryPolicy(attempts=3, initial_backoff=0, jitter=False, timeout=5)
