"""
Shared fixtures: an in-memory store and an executor with no retry delay.
"""
import pytest

from services.document_store import InMemoryDocumentStore
from services.locks import LockManager
from services.notification_dispatcher import NotificationDispatcher, MockPushProvider
from services.workflow_engine import TransitionExecutor


class RecordingDispatcher:
    """Collects dispatched notifications instead of delivering them."""

    def __init__(self):
        self.dispatched = []

    def dispatch(self, notifications):
        self.dispatched.extend(notifications)
        return None


@pytest.fixture
def store():
    return InMemoryDocumentStore()


@pytest.fixture
def recorder():
    return RecordingDispatcher()


@pytest.fixture
def executor(store, recorder):
    return TransitionExecutor(store, LockManager(), dispatcher=recorder, retry_delay=0, chat_targets={})


@pytest.fixture
def mock_push():
    return MockPushProvider()


@pytest.fixture
def dispatcher(mock_push):
    return NotificationDispatcher({"push": mock_push}, max_attempts=3, backoff_seconds=0)
