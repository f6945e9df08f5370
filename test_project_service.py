"""
测试项目、凭证与环境变量存储
"""
import os

import pytest

from app import db
from app.models import ProjectEnvVar, GlobalConfig
from app.services.build_service import BuildService
from app.services.errors import BuildConflictError
from app.services.log_store import LogStore
from app.services.crypto_service import encrypt, decrypt
from app.services.project_service import ProjectService, MASK
from conftest import wait_for_build, wait_for_process


def test_encrypt_round_trip(ctx):
    ciphertext = encrypt('秘密 value')

    assert ciphertext != '秘密 value'
    assert decrypt(ciphertext) == '秘密 value'


def test_decrypt_rejects_garbage(ctx):
    with pytest.raises(ValueError):
        decrypt('not-a-token')


def test_decrypt_with_other_key_fails(app_factory):
    first = app_factory()
    with first.app_context():
        ciphertext = encrypt('value')

    second = app_factory(ENCRYPTION_KEY='another-key')
    with second.app_context():
        with pytest.raises(ValueError):
            decrypt(ciphertext)


@pytest.mark.parametrize('data', [
    {'path': '/tmp/x'},
    {'name': 'x'},
    {'name': 'x', 'path': '/tmp/x', 'git_credential_id': 99},
])
def test_create_project_validation(ctx, data):
    with pytest.raises(ValueError):
        ProjectService.create_project(data)


def test_resolve_project_path(ctx, make_project, tmp_path):
    relative = make_project('true', path='demo')
    absolute = make_project('true', path=str(tmp_path / 'abs'))

    assert ProjectService.resolve_project_path(relative) == str(tmp_path / 'workspace' / 'demo')
    assert ProjectService.resolve_project_path(absolute) == str(tmp_path / 'abs')

    ProjectService.set_work_dir(str(tmp_path / 'other'))
    assert ProjectService.resolve_project_path(relative) == str(tmp_path / 'other' / 'demo')


def test_env_vars_stored_encrypted(ctx, make_project):
    project = make_project('true')

    ProjectService.set_env_vars(project.id, [
        {'key': 'TOKEN', 'value': 'first'},
        {'key': 'TOKEN', 'value': 'second'},
        {'key': '  ', 'value': 'ignored'},
    ])

    row = ProjectEnvVar.query.filter_by(project_id=project.id).one()
    assert row.key == 'TOKEN'
    assert 'second' not in row.value
    assert ProjectService.get_env_vars(project.id) == [{'key': 'TOKEN', 'value': MASK}]
    assert ProjectService.get_env_vars_for_build(project.id) == {'TOKEN': 'second'}


def test_masked_value_keeps_stored_secret(ctx, make_project):
    project = make_project('true')
    ProjectService.set_env_vars(project.id, [{'key': 'TOKEN', 'value': 'keep-me'}])

    ProjectService.set_env_vars(project.id, [
        {'key': 'TOKEN', 'value': MASK},
        {'key': 'NEW', 'value': MASK},
    ])

    assert ProjectService.get_env_vars_for_build(project.id) == {'TOKEN': 'keep-me', 'NEW': MASK}


def test_undecryptable_env_var_is_skipped(ctx, make_project):
    project = make_project('true')
    ProjectService.set_env_vars(project.id, [{'key': 'GOOD', 'value': 'ok'}])
    ProjectEnvVar.query.filter_by(project_id=project.id).one().value = 'corrupted'
    ProjectService.set_env_vars(project.id, [{'key': 'GOOD', 'value': MASK}, {'key': 'OTHER', 'value': 'fine'}])

    assert ProjectService.get_env_vars_for_build(project.id) == {'OTHER': 'fine'}


def test_credentials(ctx, make_project):
    ssh = ProjectService.add_credential({'name': 'deploy', 'type': 'ssh', 'ssh_key': 'KEY'})
    project = make_project('true', git_credential_id=ssh.id)

    assert ssh.ssh_key != 'KEY'
    assert ProjectService.get_credential(ssh.id)['ssh_key'] == 'KEY'
    assert ProjectService.get_credential(None) is None
    with pytest.raises(ValueError):
        ProjectService.add_credential({'name': 'bad', 'type': 'ftp'})

    assert ProjectService.delete_credential(ssh.id) is True
    assert ProjectService.get_project(project.id).git_credential_id is None
    assert ProjectService.delete_credential(ssh.id) is False


def test_default_work_dir(ctx, tmp_path):
    assert ProjectService.get_work_dir() == str(tmp_path / 'workspace')
    assert os.path.isabs(ProjectService.get_work_dir())


def test_project_with_active_build_cannot_be_deleted(ctx, make_project, manager):
    project = make_project('sleep 30\necho after')
    build_id = BuildService.start_build(project.id).id
    wait_for_process(manager, build_id)

    with pytest.raises(BuildConflictError):
        ProjectService.delete_project(project.id)
    assert ProjectService.get_project(project.id) is not None

    BuildService.cancel_build(build_id)
    wait_for_build(ctx, build_id)

    assert ProjectService.delete_project(project.id) is True
    assert LogStore.get_build(build_id) is None
    assert LogStore.count_log_lines(build_id) == 0


def test_settings_row_created_by_another_thread(ctx, tmp_path, monkeypatch):
    ProjectService.set_work_dir(str(tmp_path / 'shared'))
    db.session.expunge_all()
    find = GlobalConfig._find.__func__
    calls = []

    def stale_then_fresh(cls):
        calls.append(cls)
        return None if len(calls) == 1 else find(cls)

    monkeypatch.setattr(GlobalConfig, '_find', classmethod(stale_then_fresh))

    config = GlobalConfig.get_config()

    assert len(calls) == 2
    assert config.work_dir == str(tmp_path / 'shared')
