"""
测试 HTTP 接口
"""
import json

import pytest

from conftest import wait_for_build, wait_for_process


def parse_sse(body):
    """解析 text/event-stream 响应为 [(id, data)]"""
    records = []
    for block in body.split('\n\n'):
        if not block.strip() or block.startswith(':'):
            continue
        event_id, data = None, None
        for line in block.split('\n'):
            if line.startswith('id: '):
                event_id = int(line[4:])
            elif line.startswith('data: '):
                data = json.loads(line[6:])
        records.append((event_id, data))
    return records


@pytest.fixture
def create_project(client, project_dir):
    def _create(build_command, name='demo'):
        response = client.post('/api/projects', json={
            'name': name,
            'path': str(project_dir),
            'build_command': build_command,
        })
        assert response.status_code == 201
        return response.get_json()['data']
    return _create


def run_build(app, client, project_id):
    response = client.post('/api/builds', json={'project_id': project_id})
    assert response.status_code == 201
    build_id = response.get_json()['data']['id']
    with app.app_context():
        wait_for_build(app, build_id)
    return build_id


# ==================== 构建 ====================

def test_start_build_validation(client, create_project):
    empty = create_project('# nothing', name='empty')

    assert client.post('/api/builds', json={}).status_code == 400
    assert client.post('/api/builds', json={'project_id': 404}).status_code == 404

    response = client.post('/api/builds', json={'project_id': empty['id']})
    assert response.status_code == 400
    assert response.get_json()['success'] is False


def test_start_build_and_fetch(app, client, create_project):
    project = create_project('echo hello')

    build_id = run_build(app, client, project['id'])

    data = client.get(f'/api/builds/{build_id}').get_json()['data']
    assert data['status'] == 'success'
    assert data['exit_code'] == 0
    assert data['project_id'] == project['id']
    assert data['finished_at'] is not None

    listed = client.get(f"/api/builds?project_id={project['id']}").get_json()['data']
    assert [build['id'] for build in listed] == [build_id]


def test_conflicting_build_returns_409(app, client, create_project):
    project = create_project('sleep 30')
    build_id = client.post('/api/builds', json={'project_id': project['id']}).get_json()['data']['id']
    wait_for_process(app.extensions['build_manager'], build_id)

    assert client.post('/api/builds', json={'project_id': project['id']}).status_code == 409
    assert client.delete(f'/api/builds/{build_id}').status_code == 409
    assert client.delete(f"/api/projects/{project['id']}").status_code == 409

    assert client.post(f'/api/builds/{build_id}/cancel').get_json()['cancelled'] is True
    with app.app_context():
        build = wait_for_build(app, build_id)
    assert build.status == 'failed'


def test_unknown_build(client):
    assert client.get('/api/builds/nope').status_code == 404
    assert client.post('/api/builds/nope/cancel').status_code == 404
    assert client.get('/api/builds/nope/logs').status_code == 404
    assert client.get('/api/builds/nope/logs.txt').status_code == 404
    assert client.delete('/api/builds/nope').status_code == 404


def test_cancel_finished_build_is_noop(app, client, create_project):
    build_id = run_build(app, client, create_project('true')['id'])

    response = client.post(f'/api/builds/{build_id}/cancel')

    assert response.status_code == 200
    assert response.get_json() == {'success': True, 'cancelled': False}


def test_delete_build(app, client, create_project):
    build_id = run_build(app, client, create_project('true')['id'])

    assert client.delete(f'/api/builds/{build_id}').status_code == 200
    assert client.get(f'/api/builds/{build_id}').status_code == 404


# ==================== 日志 ====================

def test_log_stream_of_finished_build(app, client, create_project):
    build_id = run_build(app, client, create_project('echo one\necho two')['id'])

    response = client.get(f'/api/builds/{build_id}/logs')

    assert response.status_code == 200
    assert response.mimetype == 'text/event-stream'
    records = parse_sse(response.get_data(as_text=True))
    logs = [(event_id, data['data']) for event_id, data in records if data['type'] == 'log']
    assert [event_id for event_id, _ in logs] == list(range(1, len(logs) + 1))
    lines = [line for _, line in logs]
    assert lines.index('one') < lines.index('two')
    assert records[-2][1] == {'type': 'status', 'data': 'success'}
    assert records[-1][1] == {'type': 'done', 'data': {'status': 'success', 'exitCode': 0}}


def test_log_stream_resumes_after_last_event_id(app, client, create_project):
    build_id = run_build(app, client, create_project('echo one\necho two')['id'])
    full = parse_sse(client.get(f'/api/builds/{build_id}/logs').get_data(as_text=True))
    total = len([r for r in full if r[1]['type'] == 'log'])

    by_header = client.get(f'/api/builds/{build_id}/logs', headers={'Last-Event-ID': '2'})
    by_query = client.get(f'/api/builds/{build_id}/logs?after=2')

    for response in (by_header, by_query):
        records = parse_sse(response.get_data(as_text=True))
        assert [r[0] for r in records if r[1]['type'] == 'log'] == list(range(3, total + 1))


def test_log_stream_of_running_build_ends_with_done(app, client, create_project):
    project = create_project('echo start\nsleep 0.5\necho end')
    build_id = client.post('/api/builds', json={'project_id': project['id']}).get_json()['data']['id']

    records = parse_sse(client.get(f'/api/builds/{build_id}/logs').get_data(as_text=True))

    lines = [data['data'] for _, data in records if data['type'] == 'log']
    assert 'start' in lines and 'end' in lines
    assert records[-1][1]['type'] == 'done'
    with app.app_context():
        wait_for_build(app, build_id)


def test_plain_text_log_strips_color_codes(app, client, create_project):
    build_id = run_build(app, client, create_project("printf '\\033[31mred\\033[0m\\n'")['id'])

    response = client.get(f'/api/builds/{build_id}/logs.txt')

    assert response.mimetype == 'text/plain'
    text = response.get_data(as_text=True)
    assert 'red\n' in text
    assert '\x1b' not in text
    assert text.startswith('[T-Build] Starting build for project: demo\n')


# ==================== 项目与设置 ====================

def test_project_crud(client, create_project):
    project = create_project('make')

    assert client.post('/api/projects', json={'name': 'no-path'}).status_code == 400
    assert client.get(f"/api/projects/{project['id']}").get_json()['data']['build_command'] == 'make'
    assert len(client.get('/api/projects').get_json()['data']) == 1

    assert client.delete(f"/api/projects/{project['id']}").status_code == 200
    assert client.get(f"/api/projects/{project['id']}").status_code == 404


def test_env_vars_are_masked(client, create_project):
    project = create_project('env')
    url = f"/api/projects/{project['id']}/env"

    response = client.put(url, json=[{'key': 'TOKEN', 'value': 'abcdef'}, {'key': 'MODE', 'value': 'ci'}])

    assert response.status_code == 200
    assert response.get_json()['data'] == [{'key': 'MODE', 'value': '***'}, {'key': 'TOKEN', 'value': '***'}]
    assert 'abcdef' not in client.get(url).get_data(as_text=True)
    assert client.put(url, json={'TOKEN': 'x'}).status_code == 400


def test_settings_never_expose_secrets(client):
    response = client.post('/api/settings/credentials', json={
        'name': 'deploy', 'type': 'https', 'username': 'bob', 'password': 'hunter22',
    })
    assert response.status_code == 201
    credential = response.get_json()['data']
    assert credential['has_password'] is True
    assert 'password' not in credential

    settings = client.get('/api/settings')
    assert 'hunter22' not in settings.get_data(as_text=True)
    assert settings.get_json()['data']['git_credentials'][0]['username'] == 'bob'

    assert client.post('/api/settings/credentials', json={'name': 'x', 'type': 'ftp'}).status_code == 400
    assert client.delete(f"/api/settings/credentials/{credential['id']}").status_code == 200
    assert client.delete(f"/api/settings/credentials/{credential['id']}").status_code == 404


def test_update_work_dir(client, tmp_path):
    response = client.put('/api/settings', json={'work_dir': str(tmp_path / 'elsewhere')})

    assert response.get_json()['data']['work_dir'] == str(tmp_path / 'elsewhere')
    assert client.get('/api/settings').get_json()['data']['work_dir'] == str(tmp_path / 'elsewhere')
