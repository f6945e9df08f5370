import logging
import os

from flask import Flask
from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()

logger = logging.getLogger(__name__)


def create_app(config_overrides=None):
    """应用工厂函数"""
    app = Flask(__name__)

    # 加载配置
    app.config.from_object('config.Config')
    if config_overrides:
        app.config.update(config_overrides)

    os.makedirs(app.config['DATA_DIR'], exist_ok=True)

    # SQLite 在多个构建线程间共享连接池
    if app.config['SQLALCHEMY_DATABASE_URI'].startswith('sqlite'):
        options = app.config.setdefault('SQLALCHEMY_ENGINE_OPTIONS', {})
        options.setdefault('connect_args', {'check_same_thread': False, 'timeout': 30})

    # 初始化数据库
    db.init_app(app)

    # 注册路由
    from app.routes.project import project_bp
    from app.routes.config import config_bp
    from app.routes.build import build_bp
    app.register_blueprint(project_bp)
    app.register_blueprint(config_bp)
    app.register_blueprint(build_bp)

    # 构建管理器（进程、日志通道、工作线程的唯一持有者）
    from app.services.build_manager import BuildManager
    manager = BuildManager(app)
    app.extensions['build_manager'] = manager

    # 创建数据库表
    with app.app_context():
        db.create_all()

        # 处理上次运行遗留的构建
        _recover_interrupted_builds()

    return app


def _recover_interrupted_builds():
    """恢复中断的构建（应用重启后）

    重启后子进程已不存在，遗留的 pending/running 构建无法继续，统一标记为失败。
    """
    try:
        from app.services.log_store import LogStore

        recovered = LogStore.fail_unfinished_builds('Interrupted by server restart')
        if recovered:
            logger.info(f"发现 {recovered} 个中断的构建，已标记为失败")
        else:
            logger.info("没有需要恢复的构建")

    except Exception as e:
        logger.exception(f"恢复中断构建时出错: {e}")
