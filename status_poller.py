from __future__ import annotations

import enum
import logging
import threading
import time

from cloud_client import RemoteCallError

logger = logging.getLogger(__name__)


class PollOutcome(enum.Enum):
    RUNNING = 'running'
    TIMEOUT = 'timeout'
    CANCELLED = 'cancelled'
    FAILED = 'failed'


class StatusPoller:
    """Polls active runs until the run is RUNNING, the deadline passes or polling is cancelled.

    Emits exactly one terminal notification: Go! for RUNNING, Stop! for
    every other outcome. Failed polls are logged and retried on the next
    cycle; with max_consecutive_failures set, that many failures in a row
    end polling with outcome FAILED.
    """

    def __init__(self, client, notifier, run_handle, interval, max_duration,
                 max_consecutive_failures=None, clock=time.monotonic):
        self.client = client
        self.notifier = notifier
        self.run_handle = run_handle
        self.interval = interval
        self.max_duration = max_duration
        self.max_consecutive_failures = max_consecutive_failures
        self.clock = clock
        self.cancelled = threading.Event()
        self.outcome = None

    def cancel(self):
        self.cancelled.set()

    def run(self) -> PollOutcome:
        try:
            outcome = self._poll()
        except Exception:
            logger.exception('polling for run %s stopped unexpectedly', self.run_handle.run_id)
            outcome = PollOutcome.FAILED
        try:
            self._notify(outcome)
        finally:
            # outcome is published only once the terminal message went out
            self.outcome = outcome
        return outcome

    def _poll(self):
        run_id = self.run_handle.run_id
        deadline = self.clock() + self.max_duration
        failures = 0

        while True:
            try:
                runs = self.client.list_active_runs(self.run_handle.project_id)
                failures = 0
            except RemoteCallError as e:
                failures += 1
                logger.warning('poll for run %s failed (%d in a row): %s', run_id, failures, e)
                runs = []
                if self.max_consecutive_failures and failures >= self.max_consecutive_failures:
                    return PollOutcome.FAILED

            record = next((r for r in runs if r.run_id == run_id), None)
            if record is not None and record.is_running:
                logger.info('run %s (%s) is RUNNING', run_id, record.test_name)
                return PollOutcome.RUNNING
            logger.debug('run %s status: %s', run_id, record.status if record else 'not active')

            if self.cancelled.wait(self.interval):
                return PollOutcome.CANCELLED

            if self.clock() > deadline:
                return PollOutcome.TIMEOUT

    def _notify(self, outcome):
        variables = {'runId': str(self.run_handle.run_id), 'outcome': outcome.value}
        logger.info('polling for run %s ended: %s', self.run_handle.run_id, outcome.value)
        if outcome is PollOutcome.RUNNING:
            self.notifier.go(variables)
        else:
            self.notifier.stop(variables)


class PollerHandle:
    """Background thread running one StatusPoller."""

    def __init__(self, poller, name=None):
        self.poller = poller
        self.thread = threading.Thread(
            target=poller.run, daemon=True,
            name=name or f'status-poller-{poller.run_handle.run_id}')

    def start(self):
        self.thread.start()
        return self

    def cancel(self):
        self.poller.cancel()

    def wait(self, timeout=None) -> bool:
        self.thread.join(timeout)
        return not self.thread.is_alive()

    def is_alive(self) -> bool:
        return self.thread.is_alive()

    @property
    def outcome(self):
        return self.poller.outcome

