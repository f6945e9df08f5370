# app/services/__init__.py

from .build_service import BuildService
from .build_manager import BuildManager
from .git_service import GitService
from .project_service import ProjectService

__all__ = ['BuildService', 'BuildManager', 'GitService', 'ProjectService']
