"""Tests for the session-authenticated LoadRunner Cloud client."""

from __future__ import annotations

import datetime as dt
import re

import pytest

from cloud_client import (SESSION_COOKIE_NAME, ActiveRunRecord, Attribute, CloudClient,
                          MalformedBaseUrlError, RemoteCallError, RunHandle,
                          SessionNotInitializedError, ValidationError, cookie_domain_for,
                          format_utc_timestamp)
from mock_cloud_server import SAMPLE_SCRIPT


def session_cookies(client):
    return [c for c in client.session.cookies if c.name == SESSION_COOKIE_NAME]


class TestConstruction:

    def test_trailing_slash_is_removed(self) -> None:
        client = CloudClient('http://localhost:8568/')
        assert client.base_url == 'http://localhost:8568'
        assert client.host == 'localhost'

    @pytest.mark.parametrize('base_url', ['', None, 'not a url', 'http://'])
    def test_malformed_base_url(self, base_url) -> None:
        with pytest.raises(MalformedBaseUrlError):
            CloudClient(base_url)

    def test_proxy_routes_all_schemes(self) -> None:
        client = CloudClient('https://loadrunner-cloud.saas.microfocus.com/v1',
                             use_proxy=True, proxy_host='proxy.local', proxy_port=3128)
        assert client.session.proxies == {
            'http': 'http://proxy.local:3128',
            'https': 'http://proxy.local:3128',
        }

    def test_no_proxy_by_default(self) -> None:
        client = CloudClient('http://localhost:8568')
        assert client.session.proxies == {}
        assert client.session.trust_env is False

    def test_timeouts_are_bounded(self) -> None:
        client = CloudClient('http://localhost:8568', connect_timeout=2, read_timeout=7)
        assert client.timeout == (2, 7)


class TestCookieDomain:

    @pytest.mark.parametrize('host, expected', [
        ('localhost', 'localhost.local'),
        ('loadrunner-cloud.saas.microfocus.com', 'loadrunner-cloud.saas.microfocus.com'),
        ('127.0.0.1', '127.0.0.1'),
        ('::1', '::1'),
    ])
    def test_cookie_domain_for(self, host, expected) -> None:
        assert cookie_domain_for(host) == expected


class TestInitSession:

    @pytest.mark.parametrize('user, password, tenant_id', [
        ('', 'hello', '123'),
        (None, 'hello', '123'),
        ('pp', '', '123'),
        ('pp', None, '123'),
        ('pp', 'hello', ''),
        ('pp', 'hello', None),
    ])
    def test_missing_credentials_fail_without_calls(self, client, cloud_state,
                                                    user, password, tenant_id) -> None:
        with pytest.raises(ValidationError):
            client.init_session(user, password, tenant_id)
        assert cloud_state.count('auth') == 0
        assert not client.has_session

    def test_token_becomes_session_cookie(self, client, cloud_state) -> None:
        client.init_session('pp', 'hello', '123')

        assert cloud_state.count('auth') == 1
        cookies = session_cookies(client)
        assert len(cookies) == 1
        assert cookies[0].value == '8457258394'
        assert cookies[0].path == '/'
        assert client.tenant_id == '123'

    def test_cookie_is_sent_on_later_calls(self, session_client, cloud_state) -> None:
        # the mock answers 401 when the cookie is missing
        handle = session_client.start_run('1', '2')
        assert handle.run_id == 42
        assert cloud_state.count('start_run') == 1

    def test_bad_credentials(self, client) -> None:
        with pytest.raises(RemoteCallError) as exc_info:
            client.init_session('pp', 'wrong', '123')

        assert exc_info.value.status_code == 401
        assert 'invalid credentials' in exc_info.value.body
        assert not client.has_session

    def test_second_login_replaces_cookie(self, client, cloud_state) -> None:
        client.init_session('pp', 'hello', '123')
        cloud_state.token = '1111111111'
        client.init_session('pp', 'hello', '123')

        cookies = session_cookies(client)
        assert len(cookies) == 1
        assert cookies[0].value == '1111111111'
        assert cloud_state.count('auth') == 2
        client.list_active_runs('1')

    def test_unreachable_service(self) -> None:
        client = CloudClient('http://127.0.0.1:1', connect_timeout=0.5, read_timeout=0.5)
        with pytest.raises(RemoteCallError) as exc_info:
            client.init_session('pp', 'hello', '123')
        assert exc_info.value.status_code is None


class TestExecuteAuthenticated:

    def test_requires_session(self, client, cloud_state) -> None:
        with pytest.raises(SessionNotInitializedError):
            client.execute_authenticated('GET', '/test-runs/active')
        with pytest.raises(SessionNotInitializedError):
            client.start_run('1', '2')
        assert sum(cloud_state.calls.values()) == 0

    def test_non_2xx_carries_status_and_body(self, session_client) -> None:
        with pytest.raises(RemoteCallError) as exc_info:
            session_client.stop_run(999)

        assert exc_info.value.status_code == 404
        assert exc_info.value.body
        assert '404' in str(exc_info.value)

    def test_tenant_id_is_added(self, session_client, cloud_state) -> None:
        # the mock rejects requests without the right TENANTID
        assert session_client.execute_authenticated(
            'GET', '/projects/1/load-tests/2/scripts') == [SAMPLE_SCRIPT]
        cloud_state.tenant_id = '456'
        with pytest.raises(RemoteCallError) as exc_info:
            session_client.execute_authenticated('GET', '/projects/1/load-tests/2/scripts')
        assert exc_info.value.status_code == 401


class TestRuns:

    def test_start_run(self, session_client) -> None:
        handle = session_client.start_run('1', '2')
        assert handle == RunHandle(project_id='1', load_test_id='2', run_id=42)

    def test_stop_run(self, session_client, cloud_state) -> None:
        handle = session_client.start_run('1', '2')

        result = session_client.stop_run(handle.run_id)

        assert result.run_id == 42
        assert result.status == 'STOPPING'
        assert cloud_state.runs[42]['status'] == 'STOPPING'

    def test_list_active_runs(self, session_client) -> None:
        session_client.start_run('1', '2')

        runs = session_client.list_active_runs('1')

        assert runs == [ActiveRunRecord(run_id=42, test_id=2, test_name='load test 2',
                                        status='RUNNING')]
        assert runs[0].is_running
        assert session_client.list_active_runs('7') == []

    def test_redirected_post_is_followed(self, session_client, cloud_state) -> None:
        cloud_state.redirects['/projects/1/load-tests/2/runs'] = '/projects/1/load-tests/3/runs'

        handle = session_client.start_run('1', '2')

        assert handle.run_id == 42
        assert cloud_state.count('start_run') == 1
        assert cloud_state.runs[42]['testId'] == 3

    def test_redirected_put_is_followed(self, session_client, cloud_state) -> None:
        session_client.start_run('1', '2')
        cloud_state.redirects['/test-runs/7'] = '/test-runs/42'

        result = session_client.stop_run(7)

        assert result.run_id == 42
        assert cloud_state.runs[42]['status'] == 'STOPPING'


class TestSchedules:

    def test_create_schedule_with_start_time(self, session_client, cloud_state) -> None:
        start = dt.datetime(2020, 1, 2, 3, 4, 5, 666000, tzinfo=dt.timezone.utc)

        reply = session_client.create_schedule('1', '2', start_time=start)

        assert reply.timestamp == '2020-01-02T03:04:05.666Z'
        assert reply.reply['scheduleId'] == 1
        assert cloud_state.schedules == ['2020-01-02T03:04:05.666Z']

    def test_default_schedule_is_a_minute_ahead(self, session_client) -> None:
        before = dt.datetime.now(dt.timezone.utc)
        reply = session_client.create_schedule('1', '2')

        assert re.fullmatch(r'\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}\.\d{3}Z', reply.timestamp)
        scheduled = dt.datetime.strptime(reply.timestamp, '%Y-%m-%dT%H:%M:%S.%fZ')
        scheduled = scheduled.replace(tzinfo=dt.timezone.utc)
        assert dt.timedelta(seconds=59) <= scheduled - before <= dt.timedelta(seconds=61)

    def test_timestamps_are_converted_to_utc(self) -> None:
        cet = dt.timezone(dt.timedelta(hours=1))
        assert format_utc_timestamp(dt.datetime(2020, 1, 2, 4, 4, 5, tzinfo=cet)) \
            == '2020-01-02T03:04:05.000Z'
        assert format_utc_timestamp(dt.datetime(2020, 1, 2, 3, 4, 5, 123456)) \
            == '2020-01-02T03:04:05.123Z'


class TestScriptAttributes:

    def test_list_scripts_for_run(self, session_client) -> None:
        scripts = session_client.list_scripts_for_run('1', '2')

        assert len(scripts) == 1
        assert scripts[0].id == 1
        assert scripts[0].name == 'Sample Script'
        assert scripts[0].is_active

    def test_set_script_attributes(self, session_client, cloud_state) -> None:
        attribute = Attribute(name='perfanaTestRunId', value='my-test-run-1', description='header')

        result = session_client.set_script_attributes('1', '2', 1, [attribute])

        assert result == [attribute]
        assert cloud_state.attributes[1] == [
            {'name': 'perfanaTestRunId', 'value': 'my-test-run-1', 'description': 'header'}]

    def test_broadcast_to_all_scripts(self, session_client, cloud_state) -> None:
        cloud_state.scripts = [dict(SAMPLE_SCRIPT, id=1), dict(SAMPLE_SCRIPT, id=2)]
        attribute = Attribute(name='perfanaTestRunId', value='run-2')

        session_client.broadcast_attributes_to_all_scripts('1', '2', [attribute])

        assert set(cloud_state.attributes) == {1, 2}
        assert cloud_state.count('scripts') == 1

    def test_broadcast_stops_at_first_failure(self, session_client, cloud_state) -> None:
        cloud_state.scripts = [dict(SAMPLE_SCRIPT, id=i) for i in (1, 2, 3)]
        cloud_state.failing_script_ids.add(2)
        attribute = Attribute(name='perfanaTestRunId', value='run-3')

        with pytest.raises(RemoteCallError) as exc_info:
            session_client.broadcast_attributes_to_all_scripts('1', '2', [attribute])

        assert exc_info.value.status_code == 500
        assert cloud_state.count('attributes:1') == 1
        assert cloud_state.count('attributes:2') == 1
        assert cloud_state.count('attributes:3') == 0
        # no rollback of the script that was already updated
        assert list(cloud_state.attributes) == [1]
