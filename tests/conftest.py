import pytest

from clipaible.executor.storage import MemoryStorage
from tests.fakes import FakeClock, RecordingSleep


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleep():
    return RecordingSleep()
