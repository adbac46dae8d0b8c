import threading

import pytest

from fakes import FakeClient


@pytest.fixture
def client():
    return FakeClient()


@pytest.fixture
def stop_event():
    event = threading.Event()
    yield event
    event.set()
