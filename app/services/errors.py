"""构建相关异常（启动前的配置错误同步抛给调用方）"""


class BuildError(ValueError):
    """构建请求被拒绝"""


class ProjectNotFoundError(BuildError):
    pass


class BuildNotFoundError(BuildError):
    pass


class InvalidBuildConfigError(BuildError):
    """构建脚本缺失或无效"""


class BuildConflictError(BuildError):
    """项目已有进行中的构建，或构建仍在进行中无法操作"""


class BuildQueueFullError(BuildError):
    pass
