"""
Git 集成服务
构建前的认证 git pull，以及读取当前 commit 信息
"""

import logging
import os
import shlex
import tempfile
from typing import Callable, Optional, Tuple
from urllib.parse import quote, urlsplit, urlunsplit

from git import Repo
from git.exc import GitError

from app.services.command_runner import run_command, INFRA_PREFIX
from app.services.log_filters import scrub_url_credentials

logger = logging.getLogger(__name__)

GIT_PREFIX = '[git]'
DEFAULT_PULL_TIMEOUT = 30


class GitPullResult:
    """git pull 结果"""

    def __init__(self, success, commit_hash=None, commit_message=None, timed_out=False):
        self.success = success
        self.commit_hash = commit_hash
        self.commit_message = commit_message
        self.timed_out = timed_out


def get_commit_info(repo_path) -> Tuple[Optional[str], Optional[str]]:
    """读取 HEAD 的 hash 和提交信息第一行，不是 git 仓库时返回 (None, None)"""
    try:
        repo = Repo(repo_path)
        commit = repo.head.commit
        return commit.hexsha, commit.message.strip().split('\n')[0]
    except (GitError, ValueError) as e:
        logger.debug(f"读取commit信息失败: path={repo_path}, error={e}")
        return None, None


def build_authenticated_url(url, username, password):
    """将 HTTPS 凭证嵌入仓库地址，非 http(s) 地址原样返回"""
    parts = urlsplit(url)
    if parts.scheme not in ('http', 'https') or not parts.hostname:
        return url
    netloc = f"{quote(username, safe='')}:{quote(password, safe='')}@{parts.hostname}"
    if parts.port:
        netloc += f":{parts.port}"
    return urlunsplit(parts._replace(netloc=netloc))


def normalize_ssh_key(key):
    """统一换行符为 LF 并确保末尾有换行"""
    return key.replace('\r\n', '\n').replace('\r', '\n').strip() + '\n'


class GitService:
    def __init__(self, timeout=DEFAULT_PULL_TIMEOUT):
        self.timeout = timeout

    def pull(self, working_dir, line_sink: Callable[[str], None], credential=None,
             build_id=None, on_spawn=None) -> GitPullResult:
        """在工作目录执行 git pull

        Args:
            working_dir: 仓库目录
            line_sink: 日志回调，git 输出会加上 [git] 前缀
            credential: 解密后的凭证字典（ssh/https），可为空
            build_id: 用于命名临时密钥文件
            on_spawn: 进程启动回调
        """
        env = {
            # 禁止交互式认证，未认证的远端直接失败
            'GIT_TERMINAL_PROMPT': '0',
            'GIT_ASKPASS': 'echo',
            'SSH_ASKPASS': '',
        }
        command = 'git pull'
        key_path = None

        def forward(line):
            line_sink(f"{GIT_PREFIX} {scrub_url_credentials(line)}")

        try:
            if credential and credential.get('type') == 'ssh' and credential.get('ssh_key'):
                fd, key_path = tempfile.mkstemp(prefix=f"t-build-ssh-{build_id or 'key'}-")
                with os.fdopen(fd, 'w') as f:
                    f.write(normalize_ssh_key(credential['ssh_key']))
                os.chmod(key_path, 0o600)
                env['GIT_SSH_COMMAND'] = (
                    f'ssh -i {shlex.quote(key_path)} -o BatchMode=yes '
                    f'-o StrictHostKeyChecking=no -o UserKnownHostsFile=/dev/null'
                )
                line_sink(f"{INFRA_PREFIX} Using SSH credential")
            elif credential and credential.get('type') == 'https' and credential.get('username') \
                    and credential.get('password'):
                command = self._https_pull_command(working_dir, credential, line_sink)
            elif 'GIT_SSH_COMMAND' not in os.environ:
                env['GIT_SSH_COMMAND'] = 'ssh -o BatchMode=yes'

            line_sink(f"{INFRA_PREFIX} Executing git pull...")
            result = run_command(command, working_dir, forward, env=env,
                                 on_spawn=on_spawn, timeout=self.timeout)
        finally:
            if key_path:
                try:
                    os.unlink(key_path)
                except FileNotFoundError:
                    pass

        if result.timed_out:
            line_sink(f"{INFRA_PREFIX} Git pull timed out after {self.timeout:g}s")
            return GitPullResult(False, timed_out=True)

        if not result.success:
            if result.exit_code is not None:
                line_sink(f"{INFRA_PREFIX} Git pull failed with exit code: {result.exit_code}")
            return GitPullResult(False)

        commit_hash, commit_message = get_commit_info(working_dir)
        if commit_hash:
            line_sink(f"{INFRA_PREFIX} Git pull successful, commit: {commit_hash[:8]}")
            if commit_message:
                line_sink(f"{INFRA_PREFIX} Commit message: {commit_message}")
        else:
            line_sink(f"{INFRA_PREFIX} Git pull successful")
        return GitPullResult(True, commit_hash, commit_message)

    def _https_pull_command(self, working_dir, credential, line_sink):
        """HTTPS 凭证：从 origin 地址和当前分支拼出带认证的 pull 命令"""
        try:
            repo = Repo(working_dir)
            remote_url = repo.remotes.origin.url
            branch = repo.active_branch.name
        except (GitError, ValueError, AttributeError, TypeError) as e:
            logger.warning(f"读取远端信息失败，使用普通 git pull: path={working_dir}, error={e}")
            return 'git pull'

        authed_url = build_authenticated_url(remote_url, credential['username'], credential['password'])
        if authed_url == remote_url:
            return 'git pull'
        line_sink(f"{INFRA_PREFIX} Using HTTPS credential")
        return f"git pull {shlex.quote(authed_url)} {shlex.quote(branch)}"
