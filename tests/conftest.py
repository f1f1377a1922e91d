import pytest

from tests.fakes import SyncHarness
from tests.gmail_fixtures import history_response, read_message, unread_message  # noqa: F401


@pytest.fixture
def harness():
    return SyncHarness()
