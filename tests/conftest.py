"""Shared fixtures: a mock LoadRunner Cloud API, a client bound to it and a recording notifier."""

from __future__ import annotations

import threading
import time

import pytest

from cloud_client import CloudClient
from mock_cloud_server import CloudState, MockCloudServer
from notifier import Notifier
from settings import Settings


class RecordingNotifier(Notifier):
    """Keeps every message in memory instead of publishing it."""

    def __init__(self, state=None):
        self.state = state
        self.messages = []
        self.lock = threading.Lock()

    def send(self, message_type, message, variables=None):
        polls = self.state.count('active_runs') if self.state is not None else None
        with self.lock:
            self.messages.append({
                'message_type': message_type,
                'message': message,
                'variables': dict(variables or {}),
                'polls_before': polls,
            })

    def types(self) -> list[str]:
        with self.lock:
            return [m['message_type'] for m in self.messages]

    def of_type(self, message_type) -> list[dict]:
        with self.lock:
            return [m for m in self.messages if m['message_type'] == message_type]


def wait_for(predicate, timeout=5.0, step=0.01) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(step)
    return predicate()


@pytest.fixture
def cloud_state() -> CloudState:
    return CloudState()


@pytest.fixture
def cloud_server(cloud_state):
    server = MockCloudServer(cloud_state).start()
    yield server
    server.stop()


@pytest.fixture
def client(cloud_server):
    client = CloudClient(cloud_server.base_url)
    yield client
    client.close()


@pytest.fixture
def session_client(client):
    client.init_session('pp', 'hello', '123')
    return client


@pytest.fixture
def notifier(cloud_state) -> RecordingNotifier:
    return RecordingNotifier(cloud_state)


@pytest.fixture
def make_settings(cloud_server):
    def _make(**overrides) -> Settings:
        values = dict(
            BASE_URL=cloud_server.base_url,
            USER='pp',
            PASSWORD='hello',
            TENANT_ID='123',
            PROJECT_ID='1',
            LOAD_TEST_ID='2',
            USE_TRACING_HEADER=False,
            POLLING_PERIOD_SECONDS=0.01,
            POLLING_MAX_DURATION_SECONDS=5.0,
            POLLING_MAX_FAILURES=None,
            USE_PROXY=False,
            PROXY_HOST='localhost',
            PROXY_PORT=8888,
            KAFKA_BROKER='localhost:9092',
            KAFKA_EVENT_TOPIC='loadrunner_events',
            TEST_RUN_ID='my-test-run-1',
            LOG_LEVEL='DEBUG',
        )
        values.update(overrides)
        return Settings(**values)

    return _make
