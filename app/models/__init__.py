from datetime import datetime
from sqlalchemy.exc import IntegrityError

from app import db
from app.models.build import Build
from app.models.build_log import BuildLog


class Project(db.Model):
    """项目配置模型"""
    __tablename__ = 'projects'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False, unique=True, comment='项目名')
    path = db.Column(db.String(500), nullable=False, comment='项目根目录（相对路径基于工作目录）')
    build_command = db.Column(db.Text, nullable=False, default='', comment='多行构建脚本')
    git_pull_before_build = db.Column(db.Boolean, default=False, comment='构建前执行git pull')
    git_credential_id = db.Column(db.Integer, db.ForeignKey('git_credentials.id'), comment='Git凭证')
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    builds = db.relationship('Build', backref='project', cascade='all, delete-orphan', lazy='dynamic')
    env_vars = db.relationship('ProjectEnvVar', backref='project', cascade='all, delete-orphan')

    def to_dict(self):
        """转换为字典"""
        return {
            'id': self.id,
            'name': self.name,
            'path': self.path,
            'build_command': self.build_command,
            'git_pull_before_build': bool(self.git_pull_before_build),
            'git_credential_id': self.git_credential_id,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f'<Project {self.name}>'


class GitCredential(db.Model):
    """Git凭证模型（敏感字段加密存储）"""
    __tablename__ = 'git_credentials'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False, comment='凭证名称')
    type = db.Column(db.String(10), nullable=False, comment='https/ssh')
    username = db.Column(db.String(255), comment='HTTPS用户名')
    password = db.Column(db.Text, comment='HTTPS密码（加密）')
    ssh_key = db.Column(db.Text, comment='SSH私钥（加密）')

    def to_dict(self):
        """转换为字典（敏感字段不返回明文）"""
        return {
            'id': self.id,
            'name': self.name,
            'type': self.type,
            'username': self.username,
            'has_password': bool(self.password),
            'has_ssh_key': bool(self.ssh_key),
        }

    def __repr__(self):
        return f'<GitCredential {self.name}>'


class ProjectEnvVar(db.Model):
    """项目构建环境变量（值加密存储）"""
    __tablename__ = 'project_env_vars'
    __table_args__ = (
        db.UniqueConstraint('project_id', 'key', name='uq_project_env_vars_key'),
    )

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(db.Integer, db.ForeignKey('projects.id'), nullable=False)
    key = db.Column(db.String(255), nullable=False)
    value = db.Column(db.Text, nullable=False)


class GlobalConfig(db.Model):
    """全局配置模型（单例模式）"""
    __tablename__ = 'global_config'

    id = db.Column(db.Integer, primary_key=True, default=1)
    work_dir = db.Column(db.String(500), comment='工作目录')
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    @classmethod
    def get_config(cls):
        """获取全局配置（单例）"""
        config = cls._find()
        if not config:
            # 如果不存在，创建默认配置
            try:
                config = cls(id=1)
                db.session.add(config)
                db.session.commit()
            except IntegrityError:
                # 其他线程已创建
                db.session.rollback()
                config = cls._find()
        return config

    @classmethod
    def _find(cls):
        return cls.query.first()

    def to_dict(self):
        return {
            'id': self.id,
            'work_dir': self.work_dir,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None
        }

    def __repr__(self):
        return f'<GlobalConfig {self.id}>'


__all__ = ['Build', 'BuildLog', 'Project', 'GitCredential', 'ProjectEnvVar', 'GlobalConfig']
