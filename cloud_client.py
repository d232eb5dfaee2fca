from __future__ import annotations

import datetime as dt
import ipaddress
import logging
from dataclasses import dataclass, field
from urllib.parse import urlsplit

import requests

logger = logging.getLogger(__name__)

PARAM_TENANTID = 'TENANTID'
PARAM_RUN_ACTION = 'action'
PARAM_PROJECT_IDS = 'projectIds'
SESSION_COOKIE_NAME = 'LWSSO_COOKIE_KEY'

DEFAULT_CONNECT_TIMEOUT = 1.0
DEFAULT_READ_TIMEOUT = 5.0

# active runs report RUNNING, INITIALIZING, CHECKING_STATUS, STOPPING or PAUSED
STATUS_RUNNING = 'RUNNING'


class CloudClientError(Exception):
    pass


class ValidationError(CloudClientError):
    pass


class SessionNotInitializedError(CloudClientError):
    pass


class MalformedBaseUrlError(CloudClientError):
    pass


class RemoteCallError(CloudClientError):
    """Non-2xx reply or transport failure. status_code is None for the latter."""

    def __init__(self, message, status_code=None, body=None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


@dataclass(frozen=True)
class Attribute:
    name: str
    value: str
    description: str = ''

    def to_json(self) -> dict:
        return {'name': self.name, 'value': self.value, 'description': self.description}

    @classmethod
    def from_json(cls, data: dict) -> Attribute:
        return cls(name=data.get('name'), value=data.get('value'),
                   description=data.get('description') or '')


@dataclass(frozen=True)
class RunHandle:
    project_id: str
    load_test_id: str
    run_id: int


@dataclass(frozen=True)
class RunResult:
    run_id: int
    status: str | None = None


@dataclass(frozen=True)
class ScriptRef:
    id: int
    script_id: int | None = None
    name: str | None = None
    is_active: bool = True

    @classmethod
    def from_json(cls, data: dict) -> ScriptRef:
        return cls(id=data.get('id'), script_id=data.get('scriptId'),
                   name=data.get('name'), is_active=data.get('isActive', True))


@dataclass(frozen=True)
class ActiveRunRecord:
    run_id: int
    test_id: int | None = None
    test_name: str | None = None
    status: str | None = None

    @property
    def is_running(self) -> bool:
        return self.status == STATUS_RUNNING

    @classmethod
    def from_json(cls, data: dict) -> ActiveRunRecord:
        return cls(run_id=data.get('runId'), test_id=data.get('testId'),
                   test_name=data.get('testName'), status=data.get('status'))


@dataclass(frozen=True)
class ScheduleReply:
    timestamp: str
    reply: dict = field(default_factory=dict)


def format_utc_timestamp(moment: dt.datetime) -> str:
    """ISO-8601 in UTC with millisecond precision and a 'Z' suffix."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=dt.timezone.utc)
    moment = moment.astimezone(dt.timezone.utc)
    return moment.strftime('%Y-%m-%dT%H:%M:%S.') + f'{moment.microsecond // 1000:03d}Z'


def cookie_domain_for(host: str) -> str:
    # http.cookiejar matches dotless host names (e.g. "localhost") against
    # "<host>.local", so scope the cookie to that effective name.
    try:
        ipaddress.ip_address(host)
        return host
    except ValueError:
        pass
    return host if '.' in host else f'{host}.local'


def _not_empty(value, name):
    if value is None or value == '':
        raise ValidationError(f'{name} is null or empty')


class CloudClient:

    def __init__(self, base_url, use_proxy=False, proxy_host='localhost', proxy_port=8888,
                 connect_timeout=DEFAULT_CONNECT_TIMEOUT, read_timeout=DEFAULT_READ_TIMEOUT):
        try:
            host = urlsplit(base_url or '').hostname
        except ValueError as e:
            raise MalformedBaseUrlError(f'Invalid base url provided: {base_url}') from e
        if not host:
            raise MalformedBaseUrlError(f'Invalid base url provided: {base_url}')

        self.base_url = base_url[:-1] if base_url.endswith('/') else base_url
        self.host = host
        self.tenant_id = None
        self.timeout = (connect_timeout, read_timeout)

        self.session = requests.Session()
        # proxies come from use_proxy only, never from *_PROXY environment variables
        self.session.trust_env = False
        if use_proxy:
            proxy = f'http://{proxy_host}:{proxy_port}'
            self.session.proxies.update({'http': proxy, 'https': proxy})

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()

    def close(self):
        self.session.close()

    @property
    def has_session(self) -> bool:
        return SESSION_COOKIE_NAME in self.session.cookies

    def init_session(self, user, password, tenant_id):
        _not_empty(user, 'user')
        _not_empty(password, 'password')
        _not_empty(tenant_id, 'tenantId')

        reply = self._execute('POST', f'{self.base_url}/auth',
                              params={PARAM_TENANTID: tenant_id},
                              json_body={'user': user, 'password': password})
        token = reply.get('token') if isinstance(reply, dict) else None
        if not token:
            raise RemoteCallError('no token in authentication reply', body=str(reply))

        self.tenant_id = tenant_id
        # same name, domain and path: replaces the cookie of an earlier login
        self.session.cookies.set(SESSION_COOKIE_NAME, str(token),
                                 domain=cookie_domain_for(self.host), path='/')
        logger.info('authenticated against %s for tenant %s', self.base_url, tenant_id)

    def execute_authenticated(self, method, path, params=None, json_body=None):
        if not self.has_session:
            raise SessionNotInitializedError(
                'No LoadRunner cloud session present. First call init_session with credentials.')
        query = dict(params or {})
        query[PARAM_TENANTID] = self.tenant_id
        return self._execute(method, f'{self.base_url}{path}', params=query, json_body=json_body)

    def _execute(self, method, url, params=None, json_body=None):
        try:
            response = self.session.request(method, url, params=params, json=json_body,
                                            timeout=self.timeout, allow_redirects=True)
        except requests.RequestException as e:
            raise RemoteCallError(f'call to LoadRunner cloud failed: {method} {url}: {e}') from e

        if not 200 <= response.status_code <= 299:
            raise RemoteCallError(
                f'Unexpected status code: {response.status_code} for request: {method} {response.url}. '
                f'Contents: {response.text}',
                status_code=response.status_code, body=response.text)

        logger.debug('%s %s -> %s', method, response.url, response.text)
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise RemoteCallError(f'invalid json in reply for {method} {response.url}',
                                  status_code=response.status_code, body=response.text) from e

    def start_run(self, project_id, load_test_id) -> RunHandle:
        reply = self.execute_authenticated(
            'POST', f'/projects/{project_id}/load-tests/{load_test_id}/runs')
        return RunHandle(project_id=str(project_id), load_test_id=str(load_test_id),
                         run_id=_run_id_of(reply))

    def stop_run(self, run_id) -> RunResult:
        reply = self.execute_authenticated(
            'PUT', f'/test-runs/{run_id}', params={PARAM_RUN_ACTION: 'STOP'})
        status = reply.get('status') if isinstance(reply, dict) else None
        if isinstance(reply, dict) and reply.get('runId') is not None:
            run_id = reply['runId']
        return RunResult(run_id=int(run_id), status=status)

    def create_schedule(self, project_id, load_test_id, start_time=None) -> ScheduleReply:
        """Schedule a run, by default one minute from now."""
        if start_time is None:
            start_time = dt.datetime.now(dt.timezone.utc) + dt.timedelta(minutes=1)
        timestamp = format_utc_timestamp(start_time)
        reply = self.execute_authenticated(
            'POST', f'/projects/{project_id}/load-tests/{load_test_id}/schedules',
            json_body={'timestamp': timestamp})
        return ScheduleReply(timestamp=timestamp, reply=reply or {})

    def list_scripts_for_run(self, project_id, load_test_id) -> list[ScriptRef]:
        reply = self.execute_authenticated(
            'GET', f'/projects/{project_id}/load-tests/{load_test_id}/scripts')
        return [ScriptRef.from_json(item) for item in reply or []]

    def set_script_attributes(self, project_id, load_test_id, script_id, attributes) -> list[Attribute]:
        reply = self.execute_authenticated(
            'PUT',
            f'/projects/{project_id}/load-tests/{load_test_id}/scripts/{script_id}/rts/additional-attributes',
            json_body=[attribute.to_json() for attribute in attributes])
        return [Attribute.from_json(item) for item in reply or []]

    def broadcast_attributes_to_all_scripts(self, project_id, load_test_id, attributes):
        """Apply attributes to every script in order.

        Not transactional: the first failing script raises RemoteCallError,
        later scripts are skipped and earlier updates stay in place.
        """
        for script in self.list_scripts_for_run(project_id, load_test_id):
            result = self.set_script_attributes(project_id, load_test_id, script.id, attributes)
            logger.debug('attributes for script %s: %s', script.id, result)

    def list_active_runs(self, project_id) -> list[ActiveRunRecord]:
        reply = self.execute_authenticated(
            'GET', '/test-runs/active', params={PARAM_PROJECT_IDS: project_id})
        return [ActiveRunRecord.from_json(item) for item in reply or []]


def _run_id_of(reply):
    if not isinstance(reply, dict) or reply.get('runId') is None:
        raise RemoteCallError('no runId in run reply', body=str(reply))
    return int(reply['runId'])
