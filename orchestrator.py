from __future__ import annotations

import enum
import logging
import threading
from abc import ABC, abstractmethod

from cloud_client import (Attribute, CloudClient, CloudClientError, RemoteCallError,
                          SessionNotInitializedError, ValidationError)
from status_poller import PollOutcome, StatusPoller, PollerHandle

logger = logging.getLogger(__name__)

TRACING_ATTRIBUTE_NAME = 'perfanaTestRunId'
TRACING_ATTRIBUTE_DESCRIPTION = \
    'Use in web_add_header("perfana-test-run-id", lr_get_attrib_string("perfanaTestRunId"))'


class LifecycleEvent(ABC):
    """Hooks a test host calls around a load test."""

    @abstractmethod
    def before_test(self):
        pass

    @abstractmethod
    def abort_test(self):
        pass


class OrchestratorState(enum.Enum):
    IDLE = 'idle'
    AUTHENTICATED = 'authenticated'
    RUN_STARTED = 'run_started'
    POLLING = 'polling'
    NOTIFIED_RUNNING = 'notified_running'
    NOTIFIED_TIMEOUT = 'notified_timeout'
    NOTIFIED_CANCELLED = 'notified_cancelled'
    NOTIFIED_FAILED = 'notified_failed'
    FAILED = 'failed'


_TERMINAL_STATES = {
    PollOutcome.RUNNING: OrchestratorState.NOTIFIED_RUNNING,
    PollOutcome.TIMEOUT: OrchestratorState.NOTIFIED_TIMEOUT,
    PollOutcome.CANCELLED: OrchestratorState.NOTIFIED_CANCELLED,
    PollOutcome.FAILED: OrchestratorState.NOTIFIED_FAILED,
}


def tracing_attribute(test_run_id) -> Attribute:
    return Attribute(name=TRACING_ATTRIBUTE_NAME, value=test_run_id,
                     description=TRACING_ATTRIBUTE_DESCRIPTION)


class RunOrchestrator(LifecycleEvent):
    """Starts one remote run and hands it to a background StatusPoller.

    The client is authenticated and the run started on the caller's thread;
    only then is the client passed to the poller, so the cookie jar is never
    written while the poller reads it.
    """

    def __init__(self, settings, notifier, test_run_id=None, client_factory=None):
        self.settings = settings
        self.notifier = notifier
        self.test_run_id = test_run_id or settings.TEST_RUN_ID
        self.client_factory = client_factory or self._create_client
        self.client = None
        self.run_handle = None
        self.poller_handle = None
        self._state = OrchestratorState.IDLE
        self._state_lock = threading.Lock()

    @property
    def state(self) -> OrchestratorState:
        with self._state_lock:
            state = self._state
        if state is OrchestratorState.POLLING and self.poller_handle.outcome is not None:
            return _TERMINAL_STATES[self.poller_handle.outcome]
        return state

    def _set_state(self, state):
        with self._state_lock:
            self._state = state
        logger.debug('orchestrator state: %s', state.value)

    def _create_client(self):
        s = self.settings
        return CloudClient(s.BASE_URL, use_proxy=s.USE_PROXY,
                           proxy_host=s.PROXY_HOST, proxy_port=s.PROXY_PORT)

    def before_test(self):
        logger.info('before test [%s]', self.test_run_id)
        if self.poller_handle is not None and self.poller_handle.is_alive():
            raise CloudClientError(
                f'run {self.run_handle.run_id} is still being polled, not starting another run')
        try:
            self.authenticate()
            self.start_run()
        except Exception:
            self._set_state(OrchestratorState.FAILED)
            raise
        return self.start_polling()

    def abort_test(self):
        logger.info('abort test [%s] with runId [%s]', self.test_run_id,
                    self.run_handle.run_id if self.run_handle else None)
        if self.run_handle is None:
            logger.warning('no run was started, nothing to abort')
            return None
        return self.abort_run(self.run_handle.run_id)

    def authenticate(self):
        s = self.settings
        if not s.PROJECT_ID:
            raise ValidationError('projectId is null or empty')
        if not s.LOAD_TEST_ID:
            raise ValidationError('loadTestId is null or empty')

        client = self.client_factory()
        client.init_session(s.USER, s.PASSWORD, s.TENANT_ID)
        self.client = client
        self._set_state(OrchestratorState.AUTHENTICATED)

    def start_run(self):
        if self.client is None:
            raise SessionNotInitializedError('authenticate before starting a run')
        s = self.settings

        if s.USE_TRACING_HEADER:
            self._attach_tracing_attribute()

        self.run_handle = self.client.start_run(s.PROJECT_ID, s.LOAD_TEST_ID)
        self._set_state(OrchestratorState.RUN_STARTED)
        logger.info('started run with projectId: %s loadTestId: %s with runId: %s',
                    s.PROJECT_ID, s.LOAD_TEST_ID, self.run_handle.run_id)

        self.notifier.run_started(s.TENANT_ID, s.PROJECT_ID, self.run_handle.run_id)
        return self.run_handle

    def _attach_tracing_attribute(self):
        s = self.settings
        if not self.test_run_id:
            logger.warning('tracing header enabled but no test run id set, skipping attribute')
            return
        try:
            self.client.broadcast_attributes_to_all_scripts(
                s.PROJECT_ID, s.LOAD_TEST_ID, [tracing_attribute(self.test_run_id)])
        except RemoteCallError as e:
            logger.warning('could not add %s attribute to scripts of load test %s: %s',
                           TRACING_ATTRIBUTE_NAME, s.LOAD_TEST_ID, e)

    def start_polling(self) -> PollerHandle:
        if self.run_handle is None:
            raise SessionNotInitializedError('start a run before polling')
        handle = self.poller_handle
        if handle is not None and handle.is_alive() and handle.poller.run_handle == self.run_handle:
            return handle
        s = self.settings
        poller = StatusPoller(self.client, self.notifier, self.run_handle,
                              interval=s.POLLING_PERIOD_SECONDS,
                              max_duration=s.POLLING_MAX_DURATION_SECONDS,
                              max_consecutive_failures=s.POLLING_MAX_FAILURES)
        self.poller_handle = PollerHandle(poller)
        self._set_state(OrchestratorState.POLLING)
        return self.poller_handle.start()

    def abort_run(self, run_id):
        if self.client is None:
            raise SessionNotInitializedError('authenticate before aborting a run')
        result = self.client.stop_run(run_id)
        logger.info('stop requested for run %s, status: %s', result.run_id, result.status)
        return result

    def cancel_polling(self):
        if self.poller_handle is not None:
            self.poller_handle.cancel()
