"""测试公共夹具"""
import time

import pytest

from app import create_app, db
from app.services.log_store import LogStore
from app.services.project_service import ProjectService


@pytest.fixture
def app_factory(tmp_path):
    """按需创建应用，多个应用可共享同一个数据库文件"""
    apps = []

    def _create(**overrides):
        config = {
            'TESTING': True,
            'SECRET_KEY': 'test-secret',
            'DATA_DIR': str(tmp_path / 'data'),
            'WORK_DIR': str(tmp_path / 'workspace'),
            'SQLALCHEMY_DATABASE_URI': 'sqlite:///' + str(tmp_path / 'test.db'),
            'LOG_FLUSH_INTERVAL': 0.05,
            'CHANNEL_GRACE_PERIOD': 0.5,
            'GIT_PULL_TIMEOUT': 10,
            'STREAM_KEEPALIVE': None,
        }
        config.update(overrides)
        application = create_app(config)
        apps.append(application)
        return application

    yield _create

    for application in apps:
        application.extensions['build_manager'].shutdown()
        with application.app_context():
            db.session.remove()
            db.engine.dispose()


@pytest.fixture
def app(app_factory):
    return app_factory()


@pytest.fixture
def ctx(app):
    with app.app_context():
        yield app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def manager(app):
    return app.extensions['build_manager']


@pytest.fixture
def project_dir(tmp_path):
    path = tmp_path / 'workspace' / 'demo'
    path.mkdir(parents=True)
    return path


@pytest.fixture
def make_project(ctx, project_dir):
    counter = {'n': 0}

    def _make(build_command, **fields):
        counter['n'] += 1
        data = {
            'name': fields.pop('name', f"demo-{counter['n']}"),
            'path': fields.pop('path', str(project_dir)),
            'build_command': build_command,
        }
        data.update(fields)
        return ProjectService.create_project(data)

    return _make


def wait_for_build(app, build_id, timeout=20):
    """等待构建进入终态，返回最新记录"""
    manager = app.extensions['build_manager']
    manager.wait(build_id, timeout=timeout)
    deadline = time.time() + timeout
    while time.time() < deadline:
        build = LogStore.get_build(build_id)
        if build.is_finished:
            return build
        time.sleep(0.02)
    raise AssertionError(f"build {build_id} did not finish in {timeout}s")


def wait_for_process(manager, build_id, timeout=10):
    """等待构建的子进程登记"""
    deadline = time.time() + timeout
    while time.time() < deadline:
        if manager.processes.get(build_id) is not None:
            return
        time.sleep(0.02)
    raise AssertionError(f"no process registered for build {build_id}")
