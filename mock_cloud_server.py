"""Local stand-in for the LoadRunner Cloud control API.

Serves the routes the client uses from in-memory state so runs can be
started, polled and stopped without a real tenant. The tests drive it
through MockCloudServer; `python mock_cloud_server.py` serves it on 8568.
"""
from __future__ import annotations

import collections
import itertools
import threading

from flask import Flask, abort, jsonify, redirect, request
from werkzeug.serving import make_server

SESSION_COOKIE_NAME = 'LWSSO_COOKIE_KEY'

SAMPLE_SCRIPT = {
    'id': 1, 'scriptId': 1, 'name': 'Sample Script', 'isActive': True, 'vusersNum': 1,
    'startTime': 0, 'rampUp': {'duration': 60}, 'tearDown': {'duration': 60},
    'isLocalRtsEnabled': True, 'pacing': 1, 'isLocalPacingEnabled': False,
    'locationType': 0, 'iterations': 1, 'duration': 300, 'maxDuration': 60,
    'percentage': 100, 'schedulingMode': 'simple',
}


class CloudState:
    """Mutable state behind the mock API. All access goes through `lock`."""

    def __init__(self, tenant_id='123', user='pp', password='hello', token='8457258394',
                 scripts=None, first_run_id=42, polls_until_running=0):
        self.tenant_id = tenant_id
        self.user = user
        self.password = password
        self.token = token
        self.scripts = [dict(SAMPLE_SCRIPT)] if scripts is None else scripts
        self.run_ids = itertools.count(first_run_id)
        # None: runs never reach RUNNING
        self.polls_until_running = polls_until_running
        self.failing_script_ids = set()
        self.failing_polls = 0
        self.redirects = {}

        self.runs = {}
        self.attributes = {}
        self.schedules = []
        self.calls = collections.Counter()
        self.lock = threading.Lock()

    def count(self, name):
        with self.lock:
            return self.calls[name]


def create_app(state=None):
    app = Flask(__name__)
    state = state or CloudState()
    app.config['CLOUD_STATE'] = state

    @app.before_request
    def route_guard():
        target = state.redirects.get(request.path)
        if target is not None:
            query = request.query_string.decode('utf-8')
            return redirect(f'{target}?{query}' if query else target, code=307)
        if request.args.get('TENANTID') != state.tenant_id:
            return jsonify({'error': 'unknown tenant'}), 401
        if request.endpoint != 'auth' and request.cookies.get(SESSION_COOKIE_NAME) != state.token:
            return jsonify({'error': 'not authenticated'}), 401

    @app.route('/auth', methods=['POST'])
    def auth():
        data = request.get_json(silent=True) or {}
        with state.lock:
            state.calls['auth'] += 1
        if data.get('user') != state.user or data.get('password') != state.password:
            return jsonify({'error': 'invalid credentials'}), 401
        return jsonify({'token': state.token})

    @app.route('/projects/<project_id>/load-tests/<load_test_id>/runs', methods=['POST'])
    def start_run(project_id, load_test_id):
        with state.lock:
            state.calls['start_run'] += 1
            run_id = next(state.run_ids)
            state.runs[run_id] = {
                'runId': run_id, 'testId': int(load_test_id), 'projectId': project_id,
                'testName': f'load test {load_test_id}', 'status': 'INITIALIZING', 'polls': 0,
            }
        return jsonify({'runId': run_id})

    @app.route('/projects/<project_id>/load-tests/<load_test_id>/schedules', methods=['POST'])
    def create_schedule(project_id, load_test_id):
        data = request.get_json(silent=True) or {}
        with state.lock:
            state.calls['create_schedule'] += 1
            state.schedules.append(data.get('timestamp'))
            schedule_id = len(state.schedules)
        return jsonify({'scheduleId': schedule_id, 'timestamp': data.get('timestamp')})

    @app.route('/test-runs/<int:run_id>', methods=['PUT'])
    def update_run(run_id):
        with state.lock:
            state.calls['stop_run'] += 1
            run = state.runs.get(run_id)
            if run is None:
                abort(404)
            if request.args.get('action') == 'STOP':
                run['status'] = 'STOPPING'
            return jsonify({'runId': run_id, 'status': run['status']})

    @app.route('/projects/<project_id>/load-tests/<load_test_id>/scripts', methods=['GET'])
    def scripts(project_id, load_test_id):
        with state.lock:
            state.calls['scripts'] += 1
            return jsonify(state.scripts)

    @app.route('/projects/<project_id>/load-tests/<load_test_id>/scripts/<int:script_id>'
               '/rts/additional-attributes', methods=['PUT'])
    def additional_attributes(project_id, load_test_id, script_id):
        attributes = request.get_json(silent=True) or []
        with state.lock:
            state.calls['attributes'] += 1
            state.calls[f'attributes:{script_id}'] += 1
            if script_id in state.failing_script_ids:
                return jsonify({'error': 'internal error'}), 500
            state.attributes[script_id] = attributes
        return jsonify(attributes)

    @app.route('/test-runs/active', methods=['GET'])
    def active_runs():
        project_id = request.args.get('projectIds')
        with state.lock:
            state.calls['active_runs'] += 1
            if state.failing_polls > 0:
                state.failing_polls -= 1
                return jsonify({'error': 'service unavailable'}), 503
            active = []
            for run in state.runs.values():
                if run['projectId'] != project_id or run['status'] == 'STOPPING':
                    continue
                if state.polls_until_running is not None and run['polls'] >= state.polls_until_running:
                    run['status'] = 'RUNNING'
                run['polls'] += 1
                active.append({key: run[key] for key in ('runId', 'testId', 'testName', 'status')})
        return jsonify(active)

    return app


class MockCloudServer:
    """Serves a mock API app on an ephemeral port in a background thread."""

    def __init__(self, state=None, host='127.0.0.1', port=0):
        self.state = state or CloudState()
        self.app = create_app(self.state)
        self.server = make_server(host, port, self.app, threaded=True)
        self.thread = threading.Thread(target=self.server.serve_forever, daemon=True)

    @property
    def base_url(self):
        return f'http://localhost:{self.server.server_port}'

    def start(self):
        self.thread.start()
        return self

    def stop(self):
        self.server.shutdown()
        self.server.server_close()

    def __enter__(self):
        return self.start()

    def __exit__(self, *exc_info):
        self.stop()


if __name__ == '__main__':
    create_app().run(host='0.0.0.0', port=8568)
