"""构建服务层"""
import logging
import os
import shlex
import threading
import time
from datetime import datetime
from typing import List, Optional, Tuple

from flask import current_app

from app.models.build import (
    Build, BUILD_STATUS_RUNNING, BUILD_STATUS_SUCCESS, BUILD_STATUS_FAILED,
)
from app.services.command_runner import run_command, INFRA_PREFIX
from app.services.errors import (
    ProjectNotFoundError, BuildNotFoundError, InvalidBuildConfigError,
    BuildConflictError, BuildQueueFullError,
)
from app.services.git_service import GitService, get_commit_info
from app.services.log_channel import LogEvent, EVENT_LOG, EVENT_STATUS, EVENT_DONE, done_payload
from app.services.log_filters import SecretScrubber, strip_ansi
from app.services.log_store import LogStore
from app.services.project_service import ProjectService

logger = logging.getLogger(__name__)

COMMENT_MARKER = '#'
CD_DIRECTIVE = 'cd'

STEP_RUN = 'run'
STEP_CD = 'cd'

# 终态写入（最终刷盘、状态记录）的重试次数
TERMINAL_WRITE_ATTEMPTS = 3
TERMINAL_RETRY_DELAY = 0.2


def parse_build_script(script) -> List[Tuple[str, str]]:
    """解析多行构建脚本

    空行和以 # 开头的行被丢弃；形如 ``cd <目录>`` 的行作为切换目录指令，
    其余行作为 shell 命令。带有其他 shell 语法的 cd 行（如 ``cd a && make``）按普通命令执行。

    Returns:
        [(STEP_CD, 目标目录) 或 (STEP_RUN, 命令), ...]
    """
    steps = []
    for raw in (script or '').splitlines():
        line = raw.strip()
        if not line or line.startswith(COMMENT_MARKER):
            continue
        target = _cd_target(line)
        if target is not None:
            steps.append((STEP_CD, target))
        else:
            steps.append((STEP_RUN, line))
    return steps


def _cd_target(line):
    if not line.startswith(CD_DIRECTIVE + ' '):
        return None
    try:
        parts = shlex.split(line)
    except ValueError:
        return None
    if len(parts) != 2 or any(c in line for c in ';&|<>`$('):
        return None
    return parts[1]


class LogBuffer:
    """构建日志缓冲

    每行立即分配行号并广播，批量防抖落库；终态前必须 close() 刷盘。
    广播与入队在同一把锁内完成，snapshot() 返回的行数可作为行号截断点。
    """

    def __init__(self, build_id, channel, app, flush_interval=0.5, scrubber=None):
        self.build_id = build_id
        self.channel = channel
        self.app = app
        self.flush_interval = flush_interval
        self.scrubber = scrubber
        self._lock = threading.RLock()
        self._pending = []
        self._count = 0
        self._flushed = 0
        self._timer = None
        self._closed = False

    @property
    def line_count(self):
        with self._lock:
            return self._count

    def write(self, line):
        if self.scrubber:
            line = self.scrubber(line)
        with self._lock:
            self._count += 1
            self._pending.append(line)
            self.channel.publish(LogEvent(EVENT_LOG, line, self._count))
            if self._timer is None and not self._closed:
                self._timer = threading.Timer(self.flush_interval, self._flush_from_timer)
                self._timer.daemon = True
                self._timer.start()

    def _flush_from_timer(self):
        with self.app.app_context():
            try:
                self.flush()
            except Exception as e:
                # 未写入的行保留在缓冲中，下次刷盘重试
                logger.exception(f"日志刷盘失败: build_id={self.build_id}, error={e}")

    def flush(self):
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            if not self._pending:
                return
            lines = list(self._pending)
            LogStore.append_log_lines(self.build_id, lines, self._flushed + 1)
            self._flushed += len(lines)
            del self._pending[:len(lines)]

    def snapshot(self) -> List[str]:
        with self._lock:
            return LogStore.get_log_lines(self.build_id) + list(self._pending)

    def close(self):
        with self._lock:
            self._closed = True
            self.flush()


class BuildExecutor:
    """构建执行器：状态机 pending -> running -> success/failed"""

    def __init__(self, build_id, manager):
        self.build_id = build_id
        self.manager = manager
        self.channel = manager.channels.get(build_id)
        self.log: Optional[LogBuffer] = None
        self.status = None

    def execute(self):
        """执行构建主流程，所有失败都收敛为 failed 状态"""
        build = LogStore.get_build(self.build_id)
        if not build:
            raise Exception(f"构建不存在: {self.build_id}")

        project = ProjectService.get_project(build.project_id)
        secrets = []
        if project:
            secrets = list(ProjectService.get_env_vars_for_build(project.id).values())

        self.log = LogBuffer(
            self.build_id,
            self.channel,
            self.manager.app,
            flush_interval=self.manager.flush_interval,
            scrubber=SecretScrubber(secrets),
        )
        self.manager.register_buffer(self.build_id, self.log)

        try:
            self._transition_running()
            if not project:
                self.log.write(f"{INFRA_PREFIX} Project not found: {build.project_id}")
                outcome = (BUILD_STATUS_FAILED, None, 'Project not found')
            else:
                logger.info(f"开始执行构建: build_id={self.build_id}, project={project.name}")
                outcome = self._run(project)
        except Exception as e:
            logger.exception(f"构建执行失败: build_id={self.build_id}, error={e}")
            self.log.write('')
            self.log.write(f"{INFRA_PREFIX} Build error: {e}")
            outcome = (BUILD_STATUS_FAILED, None, str(e))

        self._finish(*outcome)

    def _transition_running(self):
        LogStore.update_build_record(self.build_id, status=BUILD_STATUS_RUNNING)
        self.status = BUILD_STATUS_RUNNING
        self.channel.publish(LogEvent(EVENT_STATUS, BUILD_STATUS_RUNNING))

    def _finish(self, status, exit_code=None, error=None):
        """进入终态：先刷盘，再写状态，最后广播

        存储失败时仍然广播 done 并释放通道，观察者不会一直等待。
        """
        try:
            self._retry(self.log.close, '最终日志刷盘')
        except Exception as e:
            logger.exception(f"最终日志刷盘失败: build_id={self.build_id}, error={e}")
            lost = f"Log persistence failed: {e}"
            error = f"{error}; {lost}" if error else lost

        try:
            self._retry(lambda: LogStore.update_build_record(
                self.build_id,
                status=status,
                finished_at=datetime.utcnow(),
                exit_code=exit_code,
                error_message=error,
            ), '写入构建终态')
        except Exception as e:
            # 记录保持未结束状态，下次启动时由恢复流程标记为失败
            logger.exception(f"写入构建终态失败: build_id={self.build_id}, error={e}")
        finally:
            self.status = status
            self.manager.unregister_buffer(self.build_id)

            self.channel.publish(LogEvent(EVENT_STATUS, status))
            self.channel.publish(LogEvent(EVENT_DONE, done_payload(status, exit_code, error)))
            self.manager.channels.schedule_disposal(self.build_id, self.manager.grace_period)

        logger.info(f"构建结束: build_id={self.build_id}, status={status}, exit_code={exit_code}")

    def _retry(self, action, what):
        for attempt in range(1, TERMINAL_WRITE_ATTEMPTS + 1):
            try:
                return action()
            except Exception as e:
                if attempt == TERMINAL_WRITE_ATTEMPTS:
                    raise
                logger.warning(f"{what}失败，准备重试: build_id={self.build_id}, attempt={attempt}, error={e}")
                time.sleep(TERMINAL_RETRY_DELAY)

    def _track(self, process):
        self.manager.processes.register(self.build_id, process)

    def _untrack(self):
        self.manager.processes.unregister(self.build_id)

    def _run(self, project):
        write = self.log.write
        root = ProjectService.resolve_project_path(project)

        write(f"{INFRA_PREFIX} Starting build for project: {project.name}")
        write(f"{INFRA_PREFIX} Working directory: {root}")

        if project.git_pull_before_build:
            write('')
            credential = ProjectService.get_credential(project.git_credential_id)
            git = GitService(timeout=self.manager.git_timeout)
            try:
                result = git.pull(root, write, credential=credential,
                                  build_id=self.build_id, on_spawn=self._track)
            finally:
                self._untrack()
            if not result.success:
                write('')
                write(f"{INFRA_PREFIX} Build aborted due to git pull failure")
                error = 'Git pull timed out' if result.timed_out else 'Git pull failed'
                return BUILD_STATUS_FAILED, None, error
            commit_hash, commit_message = result.commit_hash, result.commit_message
        else:
            # 即使不 pull，也尝试获取当前 commit 信息
            commit_hash, commit_message = get_commit_info(root)

        if commit_hash:
            LogStore.update_build_record(
                self.build_id,
                git_commit_hash=commit_hash,
                git_commit_message=commit_message,
            )
            # git pull 成功后已经输出过 commit 信息
            if not project.git_pull_before_build:
                write(f"{INFRA_PREFIX} Current commit: {commit_hash[:8]}")
                if commit_message:
                    write(f"{INFRA_PREFIX} Commit message: {commit_message}")

        steps = parse_build_script(project.build_command)
        total = len([step for step in steps if step[0] == STEP_RUN])
        if total == 0:
            write(f"{INFRA_PREFIX} No build commands to execute")
            return BUILD_STATUS_FAILED, None, 'No build commands'

        env = ProjectService.get_env_vars_for_build(project.id)
        current_dir = root
        step_count = 0
        last_exit_code = 0

        for kind, value in steps:
            if kind == STEP_CD:
                target = os.path.expanduser(value)
                new_dir = os.path.normpath(target if os.path.isabs(target) else os.path.join(current_dir, target))
                write('')
                if not os.path.isdir(new_dir):
                    write(f"{INFRA_PREFIX} Failed to change directory: {new_dir} does not exist")
                    return BUILD_STATUS_FAILED, None, f"Directory not found: {value}"
                current_dir = new_dir
                write(f"{INFRA_PREFIX} Changed directory to: {current_dir}")
                continue

            step_count += 1
            step_label = f" [{step_count}/{total}]" if total > 1 else ''
            write('')
            write(f"{INFRA_PREFIX}{step_label} Executing: {value}")
            if current_dir != root:
                write(f"{INFRA_PREFIX} Working directory: {current_dir}")

            try:
                result = run_command(value, current_dir, write, env=env, on_spawn=self._track)
            finally:
                self._untrack()
            last_exit_code = result.exit_code

            if not result.success:
                write('')
                write(f"{INFRA_PREFIX} Build failed at step {step_count} with exit code: {result.exit_code}")
                return BUILD_STATUS_FAILED, result.exit_code, None

        # 所有命令执行成功
        write('')
        write(f"{INFRA_PREFIX} Build success")
        return BUILD_STATUS_SUCCESS, last_exit_code if last_exit_code is not None else 0, None


class BuildService:
    """构建管理服务"""

    @staticmethod
    def _manager():
        return current_app.extensions['build_manager']

    @staticmethod
    def start_build(project_id) -> Build:
        """创建构建记录并提交执行

        Raises:
            ProjectNotFoundError: 项目不存在
            InvalidBuildConfigError: 构建脚本为空
            BuildConflictError: 项目已有进行中的构建
            BuildQueueFullError: 构建队列已满
        """
        project = ProjectService.get_project(project_id)
        if not project:
            raise ProjectNotFoundError(f"项目不存在: {project_id}")

        steps = parse_build_script(project.build_command)
        if not any(kind == STEP_RUN for kind, _ in steps):
            raise InvalidBuildConfigError(f"项目未配置构建命令: {project.name}")

        manager = BuildService._manager()
        if manager.is_project_building(project.id):
            raise BuildConflictError(f"项目已有进行中的构建: {project.name}")

        build = LogStore.create_build_record(project.id)
        try:
            manager.submit(build.id, project.id)
        except (BuildConflictError, BuildQueueFullError) as e:
            LogStore.update_build_record(
                build.id,
                status=BUILD_STATUS_FAILED,
                finished_at=datetime.utcnow(),
                error_message=str(e),
            )
            raise

        logger.info(f"创建构建成功: build_id={build.id}, project={project.name}")
        return build

    @staticmethod
    def cancel_build(build_id) -> bool:
        """取消构建：向当前子进程发送终止信号，状态由命令退出码驱动"""
        return BuildService._manager().cancel(build_id)

    @staticmethod
    def get_build(build_id) -> Build:
        build = LogStore.get_build(build_id)
        if not build:
            raise BuildNotFoundError(f"构建不存在: {build_id}")
        return build

    @staticmethod
    def get_all_builds(project_id=None, limit=100, offset=0):
        return [build.to_dict() for build in LogStore.list_builds(project_id, limit, offset)]

    @staticmethod
    def delete_build(build_id):
        build = BuildService.get_build(build_id)
        if not build.is_finished or BuildService._manager().is_active(build_id):
            raise BuildConflictError(f"构建进行中，无法删除: {build_id}")
        return LogStore.delete_build_record(build_id)

    @staticmethod
    def get_log_lines(build_id) -> List[str]:
        BuildService.get_build(build_id)
        return BuildService._manager().snapshot(build_id)

    @staticmethod
    def get_log_text(build_id) -> str:
        """纯文本日志（去除 ANSI 颜色码）"""
        lines = BuildService.get_log_lines(build_id)
        return ''.join(strip_ansi(line) + '\n' for line in lines)

    @staticmethod
    def open_live_stream(build_id, after_seq=0, keepalive=None):
        from app.services.live_stream import LiveStream

        BuildService.get_build(build_id)
        return LiveStream(build_id, BuildService._manager(), after_seq=after_seq, keepalive=keepalive)
