"""
构建管理器
应用生命周期内唯一的构建资源持有者：工作线程池、子进程表、日志通道表、日志缓冲表
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, List, Optional

from app.services.command_runner import ProcessRegistry
from app.services.errors import BuildConflictError, BuildQueueFullError
from app.services.log_channel import ChannelRegistry

logger = logging.getLogger(__name__)


class BuildManager:
    """构建管理器"""

    def __init__(self, app):
        # 保存Flask应用实例用于在线程中创建上下文
        self.app = app
        self.max_workers = app.config['BUILD_MAX_WORKERS']
        self.queue_limit = app.config['BUILD_QUEUE_LIMIT']
        self.flush_interval = app.config['LOG_FLUSH_INTERVAL']
        self.grace_period = app.config['CHANNEL_GRACE_PERIOD']
        self.git_timeout = app.config['GIT_PULL_TIMEOUT']

        self.executor = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix='t-build')
        self.processes = ProcessRegistry()
        self.channels = ChannelRegistry()

        self._lock = threading.Lock()
        self._active: Dict[str, object] = {}  # build_id -> project_id
        self._buffers = {}  # build_id -> LogBuffer
        self._futures = {}

        logger.info(f"构建管理器初始化完成: max_workers={self.max_workers}, queue_limit={self.queue_limit}")

    # ==================== 任务调度 ====================

    def is_project_building(self, project_id) -> bool:
        with self._lock:
            return project_id in self._active.values()

    def is_active(self, build_id) -> bool:
        with self._lock:
            return build_id in self._active

    def active_builds(self) -> List[str]:
        with self._lock:
            return list(self._active.keys())

    def submit(self, build_id, project_id):
        """提交构建到线程池"""
        with self._lock:
            if project_id in self._active.values():
                raise BuildConflictError(f"项目已有进行中的构建: {project_id}")
            if len(self._active) >= self.queue_limit:
                raise BuildQueueFullError("构建队列已满，请稍后重试")
            self._active[build_id] = project_id

        # 先创建通道，订阅者可以在构建开始前接入
        self.channels.get(build_id)
        future = self.executor.submit(self._run_build, build_id)
        with self._lock:
            if build_id in self._active:
                self._futures[build_id] = future

        logger.info(f"构建已提交到执行器: build_id={build_id}, project_id={project_id}")
        return future

    def _run_build(self, build_id):
        """在工作线程中执行构建"""
        from app.services.build_service import BuildExecutor

        try:
            # 在新线程中需要创建应用上下文
            with self.app.app_context():
                BuildExecutor(build_id, self).execute()
        except Exception as e:
            logger.exception(f"构建执行异常: build_id={build_id}, error={e}")
        finally:
            with self._lock:
                self._active.pop(build_id, None)
                self._futures.pop(build_id, None)
            logger.info(f"构建已从队列移除: build_id={build_id}")

    # ==================== 日志缓冲 ====================

    def register_buffer(self, build_id, buffer):
        with self._lock:
            self._buffers[build_id] = buffer

    def unregister_buffer(self, build_id):
        with self._lock:
            self._buffers.pop(build_id, None)

    def snapshot(self, build_id) -> List[str]:
        """已产生的全部日志行（已落库 + 缓冲中），长度即最后一行的行号"""
        from app.services.log_store import LogStore

        with self._lock:
            buffer = self._buffers.get(build_id)
        if buffer is not None:
            return buffer.snapshot()
        return LogStore.get_log_lines(build_id)

    def get_buffer(self, build_id):
        with self._lock:
            return self._buffers.get(build_id)

    # ==================== 取消与关闭 ====================

    def cancel(self, build_id) -> bool:
        cancelled = self.processes.terminate(build_id)
        if cancelled:
            logger.info(f"已发送终止信号: build_id={build_id}")
        return cancelled

    def wait(self, build_id, timeout=None):
        """等待构建线程结束（测试和关闭时使用）"""
        with self._lock:
            future = self._futures.get(build_id)
        if future is not None:
            future.result(timeout=timeout)

    def shutdown(self, wait=True):
        for build_id in self.processes.running_builds():
            self.cancel(build_id)
        self.executor.shutdown(wait=wait)
        self.channels.shutdown()
        logger.info("构建管理器已关闭")
