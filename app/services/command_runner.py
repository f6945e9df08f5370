"""
命令执行器
通过 shell 启动单条命令，逐行回调合并后的 stdout/stderr 输出
"""

import logging
import os
import signal
import subprocess
import threading
from typing import Callable, Dict, Optional

from app.services.log_filters import scrub_url_credentials

logger = logging.getLogger(__name__)

INFRA_PREFIX = '[T-Build]'


class CommandResult:
    """命令执行结果"""

    def __init__(self, success, exit_code=None, timed_out=False):
        self.success = success
        self.exit_code = exit_code
        self.timed_out = timed_out

    def __repr__(self):
        return f'<CommandResult success={self.success} exit_code={self.exit_code}>'


class ProcessRegistry:
    """构建ID -> 正在运行的子进程"""

    def __init__(self):
        self._lock = threading.Lock()
        self._processes: Dict[str, subprocess.Popen] = {}

    def register(self, build_id, process):
        with self._lock:
            self._processes[build_id] = process

    def unregister(self, build_id, process=None):
        with self._lock:
            if process is None or self._processes.get(build_id) is process:
                self._processes.pop(build_id, None)

    def get(self, build_id) -> Optional[subprocess.Popen]:
        with self._lock:
            return self._processes.get(build_id)

    def terminate(self, build_id) -> bool:
        """向构建当前的子进程发送 SIGTERM，没有进程时返回 False"""
        process = self.get(build_id)
        if process is None or process.poll() is not None:
            return False
        terminate_process(process)
        return True

    def running_builds(self):
        with self._lock:
            return list(self._processes.keys())


def terminate_process(process, sig=signal.SIGTERM):
    """向整个进程组发送信号（shell 启动的子孙进程一并结束）"""
    try:
        os.killpg(os.getpgid(process.pid), sig)
    except ProcessLookupError:
        pass
    except OSError as e:
        logger.warning(f"发送信号到进程组失败，改为直接结束进程: pid={process.pid}, error={e}")
        try:
            process.send_signal(sig)
        except ProcessLookupError:
            pass


def run_command(command: str, cwd: str, line_sink: Callable[[str], None],
                env: Optional[Dict[str, str]] = None,
                on_spawn: Optional[Callable[[subprocess.Popen], None]] = None,
                timeout: Optional[float] = None) -> CommandResult:
    """执行一条 shell 命令

    Args:
        command: 命令行
        cwd: 工作目录
        line_sink: 每行输出的回调
        env: 追加到当前进程环境变量之上的变量
        on_spawn: 进程启动后的回调，用于登记进程以便取消
        timeout: 超时秒数，超时后结束进程组（由调用方输出提示）

    Returns:
        CommandResult: exit_code 为 None 表示进程未能启动或超时
    """
    process_env = os.environ.copy()
    process_env['FORCE_COLOR'] = '1'
    if env:
        process_env.update(env)

    try:
        process = subprocess.Popen(
            command,
            shell=True,
            cwd=cwd,
            env=process_env,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            start_new_session=True,
        )
    except OSError as e:
        logger.warning(f"命令启动失败: command={scrub_url_credentials(command)!r}, cwd={cwd}, error={e}")
        line_sink(f"{INFRA_PREFIX} Error: {e.strerror or e}")
        return CommandResult(False, None)

    if on_spawn:
        on_spawn(process)

    timed_out = threading.Event()
    timer = None
    if timeout:
        def _on_timeout():
            timed_out.set()
            terminate_process(process, signal.SIGKILL)

        timer = threading.Timer(timeout, _on_timeout)
        timer.daemon = True
        timer.start()

    try:
        for raw in iter(process.stdout.readline, b''):
            line = raw.decode('utf-8', errors='replace').rstrip('\r\n')
            if line:
                line_sink(line)
        exit_code = process.wait()
    finally:
        if timer:
            timer.cancel()
        process.stdout.close()

    if timed_out.is_set():
        logger.warning(f"命令执行超时已结束: command={scrub_url_credentials(command)!r}, timeout={timeout}")
        return CommandResult(False, None, timed_out=True)

    return CommandResult(exit_code == 0, exit_code)
