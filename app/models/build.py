"""构建记录模型"""
import uuid
from datetime import datetime
from app import db


BUILD_STATUS_PENDING = 'pending'
BUILD_STATUS_RUNNING = 'running'
BUILD_STATUS_SUCCESS = 'success'
BUILD_STATUS_FAILED = 'failed'

TERMINAL_STATUSES = (BUILD_STATUS_SUCCESS, BUILD_STATUS_FAILED)
ACTIVE_STATUSES = (BUILD_STATUS_PENDING, BUILD_STATUS_RUNNING)


def _new_build_id():
    return uuid.uuid4().hex


class Build(db.Model):
    """构建记录模型"""
    __tablename__ = 'builds'

    # 基础信息
    id = db.Column(db.String(32), primary_key=True, default=_new_build_id)
    project_id = db.Column(db.Integer, db.ForeignKey('projects.id'), nullable=False, index=True)

    # 构建状态
    status = db.Column(db.String(20), nullable=False, default=BUILD_STATUS_PENDING)
    # pending/running/success/failed
    exit_code = db.Column(db.Integer)  # 最后执行命令的退出码
    error_message = db.Column(db.Text)  # 非命令退出导致的失败原因

    # Git信息（每次构建只记录一次）
    git_commit_hash = db.Column(db.String(40))
    git_commit_message = db.Column(db.Text)

    # 时间戳
    started_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    finished_at = db.Column(db.DateTime)  # 只在进入终态时写入一次

    # 关联关系
    logs = db.relationship('BuildLog', backref='build', cascade='all, delete-orphan',
                           order_by='BuildLog.seq', lazy='dynamic')

    @property
    def is_finished(self):
        return self.status in TERMINAL_STATUSES

    def to_dict(self):
        """转换为字典"""
        return {
            'id': self.id,
            'project_id': self.project_id,
            'status': self.status,
            'exit_code': self.exit_code,
            'error_message': self.error_message,
            'git_commit_hash': self.git_commit_hash,
            'git_commit_message': self.git_commit_message,
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'finished_at': self.finished_at.isoformat() if self.finished_at else None,
        }

    def __repr__(self):
        return f'<Build {self.id} - {self.status}>'
