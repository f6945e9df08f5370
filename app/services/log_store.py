"""
构建记录与日志存储
构建状态字段和日志行的持久化，进程重启后仍可按构建ID查询
"""

import logging
from datetime import datetime
from typing import List, Optional

from app import db
from app.models.build import Build, BUILD_STATUS_FAILED, BUILD_STATUS_PENDING, ACTIVE_STATUSES
from app.models.build_log import BuildLog

logger = logging.getLogger(__name__)


class LogStore:
    """构建记录与日志行的持久化"""

    @staticmethod
    def create_build_record(project_id) -> Build:
        try:
            build = Build(project_id=project_id, status=BUILD_STATUS_PENDING, started_at=datetime.utcnow())
            db.session.add(build)
            db.session.commit()
            return build
        except Exception:
            db.session.rollback()
            raise

    @staticmethod
    def get_build(build_id) -> Optional[Build]:
        build = db.session.get(Build, build_id)
        if build is not None:
            # 其他线程可能已更新该记录
            db.session.refresh(build)
        return build

    @staticmethod
    def list_builds(project_id=None, limit=100, offset=0) -> List[Build]:
        query = Build.query
        if project_id is not None:
            query = query.filter_by(project_id=project_id)
        query = query.order_by(Build.started_at.desc()).limit(limit).offset(offset)
        return query.all()

    @staticmethod
    def update_build_record(build_id, **fields) -> Optional[Build]:
        """部分更新构建记录"""
        build = db.session.get(Build, build_id)
        if not build:
            return None
        try:
            for key, value in fields.items():
                setattr(build, key, value)
            db.session.commit()
            return build
        except Exception:
            db.session.rollback()
            raise

    @staticmethod
    def append_log_lines(build_id, lines: List[str], start_seq: int):
        """追加日志行，start_seq 为第一行的行号"""
        if not lines:
            return
        try:
            db.session.add_all([
                BuildLog(build_id=build_id, seq=start_seq + offset, content=line)
                for offset, line in enumerate(lines)
            ])
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

    @staticmethod
    def get_log_lines(build_id) -> List[str]:
        rows = (
            db.session.query(BuildLog.content)
            .filter(BuildLog.build_id == build_id)
            .order_by(BuildLog.seq)
            .all()
        )
        return [row.content for row in rows]

    @staticmethod
    def count_log_lines(build_id) -> int:
        return BuildLog.query.filter_by(build_id=build_id).count()

    @staticmethod
    def delete_build_record(build_id) -> bool:
        """删除构建记录及其日志"""
        build = db.session.get(Build, build_id)
        if not build:
            return False
        try:
            BuildLog.query.filter_by(build_id=build_id).delete()
            db.session.delete(build)
            db.session.commit()
            logger.info(f"构建记录已删除: build_id={build_id}")
            return True
        except Exception:
            db.session.rollback()
            raise

    @staticmethod
    def fail_unfinished_builds(reason) -> int:
        """将所有未结束的构建标记为失败，返回处理数量"""
        builds = Build.query.filter(Build.status.in_(ACTIVE_STATUSES)).all()
        now = datetime.utcnow()
        for build in builds:
            build.status = BUILD_STATUS_FAILED
            build.finished_at = now
            build.error_message = reason
        db.session.commit()
        return len(builds)
