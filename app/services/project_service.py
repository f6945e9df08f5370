"""
项目与设置服务
构建引擎所需的项目、凭证、环境变量和工作目录读写
"""

import logging
import os
from typing import Dict, List, Optional

from app import db
from app.models import Project, GitCredential, ProjectEnvVar, GlobalConfig
from app.services.crypto_service import encrypt, decrypt
from app.services.errors import BuildConflictError
from flask import current_app

logger = logging.getLogger(__name__)

MASK = '***'
CREDENTIAL_TYPES = ('https', 'ssh')


class ProjectService:
    """项目与设置管理服务"""

    # ==================== 项目 ====================

    @staticmethod
    def get_project(project_id) -> Optional[Project]:
        if project_id is None:
            return None
        return db.session.get(Project, project_id)

    @staticmethod
    def get_all_projects() -> List[Project]:
        return Project.query.order_by(Project.id).all()

    @staticmethod
    def create_project(data: Dict) -> Project:
        """创建项目

        Args:
            data: {
                'name': 'demo',
                'path': 'demo' 或绝对路径,
                'build_command': 'npm ci\\nnpm run build',
                'git_pull_before_build': False,
                'git_credential_id': None
            }
        """
        for field in ('name', 'path'):
            if not data.get(field):
                raise ValueError(f"缺少必填参数: {field}")

        credential_id = data.get('git_credential_id')
        if credential_id and not db.session.get(GitCredential, credential_id):
            raise ValueError(f"凭证不存在: {credential_id}")

        try:
            project = Project(
                name=data['name'],
                path=data['path'],
                build_command=data.get('build_command') or '',
                git_pull_before_build=bool(data.get('git_pull_before_build')),
                git_credential_id=credential_id or None,
            )
            db.session.add(project)
            db.session.commit()
            logger.info(f"创建项目成功: project_id={project.id}, name={project.name}")
            return project
        except Exception:
            db.session.rollback()
            raise

    @staticmethod
    def delete_project(project_id) -> bool:
        """删除项目及其构建记录

        Raises:
            BuildConflictError: 项目有进行中的构建
        """
        project = ProjectService.get_project(project_id)
        if not project:
            return False
        if current_app.extensions['build_manager'].is_project_building(project.id):
            raise BuildConflictError(f"项目有进行中的构建，无法删除: {project.name}")
        db.session.delete(project)
        db.session.commit()
        logger.info(f"项目已删除: project_id={project_id}")
        return True

    @staticmethod
    def resolve_project_path(project: Project) -> str:
        """项目根目录：相对路径基于工作目录解析"""
        path = os.path.expanduser(project.path)
        if not os.path.isabs(path):
            path = os.path.join(ProjectService.get_work_dir(), path)
        return os.path.abspath(path)

    # ==================== 环境变量 ====================

    @staticmethod
    def get_env_vars(project_id) -> List[Dict]:
        """获取环境变量列表（值已打码）"""
        rows = ProjectEnvVar.query.filter_by(project_id=project_id).order_by(ProjectEnvVar.key).all()
        return [{'key': row.key, 'value': MASK} for row in rows]

    @staticmethod
    def set_env_vars(project_id, variables: List[Dict]):
        """整体替换项目的环境变量

        同名键以最后一个为准；值为打码占位符时保留原有密文。
        """
        deduped = {}
        for item in variables:
            key = (item.get('key') or '').strip()
            if key:
                deduped[key] = item.get('value') or ''

        existing = {
            row.key: row.value
            for row in ProjectEnvVar.query.filter_by(project_id=project_id).all()
        }

        try:
            ProjectEnvVar.query.filter_by(project_id=project_id).delete()
            for key, value in deduped.items():
                if value == MASK and key in existing:
                    stored = existing[key]
                else:
                    stored = encrypt(value)
                db.session.add(ProjectEnvVar(project_id=project_id, key=key, value=stored))
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

    @staticmethod
    def get_env_vars_for_build(project_id) -> Dict[str, str]:
        """获取解密后的环境变量，仅供构建进程使用"""
        result = {}
        for row in ProjectEnvVar.query.filter_by(project_id=project_id).all():
            try:
                result[row.key] = decrypt(row.value)
            except ValueError:
                logger.warning(f"环境变量解密失败，已忽略: project_id={project_id}, key={row.key}")
        return result

    # ==================== Git凭证 ====================

    @staticmethod
    def add_credential(data: Dict) -> GitCredential:
        cred_type = data.get('type')
        if cred_type not in CREDENTIAL_TYPES:
            raise ValueError(f"不支持的凭证类型: {cred_type}")
        if not data.get('name'):
            raise ValueError("缺少必填参数: name")

        try:
            credential = GitCredential(
                name=data['name'],
                type=cred_type,
                username=data.get('username'),
                password=encrypt(data['password']) if data.get('password') else None,
                ssh_key=encrypt(data['ssh_key']) if data.get('ssh_key') else None,
            )
            db.session.add(credential)
            db.session.commit()
            logger.info(f"添加Git凭证: credential_id={credential.id}, type={cred_type}")
            return credential
        except Exception:
            db.session.rollback()
            raise

    @staticmethod
    def get_all_credentials() -> List[GitCredential]:
        return GitCredential.query.order_by(GitCredential.id).all()

    @staticmethod
    def delete_credential(credential_id) -> bool:
        credential = db.session.get(GitCredential, credential_id)
        if not credential:
            return False
        Project.query.filter_by(git_credential_id=credential_id).update({'git_credential_id': None})
        db.session.delete(credential)
        db.session.commit()
        return True

    @staticmethod
    def get_credential(credential_id) -> Optional[Dict]:
        """获取解密后的完整凭证，仅限进程内使用，禁止写入日志"""
        if not credential_id:
            return None
        credential = db.session.get(GitCredential, credential_id)
        if not credential:
            return None
        return {
            'id': credential.id,
            'name': credential.name,
            'type': credential.type,
            'username': credential.username,
            'password': decrypt(credential.password) if credential.password else None,
            'ssh_key': decrypt(credential.ssh_key) if credential.ssh_key else None,
        }

    # ==================== 工作目录 ====================

    @staticmethod
    def get_work_dir() -> str:
        config = GlobalConfig.get_config()
        return os.path.expanduser(config.work_dir or current_app.config['WORK_DIR'])

    @staticmethod
    def set_work_dir(work_dir: str) -> GlobalConfig:
        config = GlobalConfig.get_config()
        config.work_dir = work_dir or None
        db.session.commit()
        return config
