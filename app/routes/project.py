from flask import Blueprint, request, jsonify
from app.services.errors import BuildConflictError
from app.services.project_service import ProjectService
import logging

project_bp = Blueprint('project', __name__, url_prefix='/api/projects')

# 配置日志
logger = logging.getLogger(__name__)


@project_bp.route('', methods=['GET'])
def project_list():
    """项目列表"""
    projects = ProjectService.get_all_projects()
    return jsonify({'success': True, 'data': [project.to_dict() for project in projects]})


@project_bp.route('', methods=['POST'])
def project_create():
    """创建项目"""
    data = request.get_json(silent=True) or {}
    try:
        project = ProjectService.create_project(data)
        return jsonify({'success': True, 'data': project.to_dict()}), 201
    except ValueError as e:
        return jsonify({'success': False, 'message': str(e)}), 400
    except Exception as e:
        logger.exception(f"创建项目失败: {e}")
        return jsonify({'success': False, 'message': f'创建失败: {str(e)}'}), 500


@project_bp.route('/<int:project_id>', methods=['GET'])
def project_detail(project_id):
    project = ProjectService.get_project(project_id)
    if not project:
        return jsonify({'success': False, 'message': '项目不存在'}), 404
    return jsonify({'success': True, 'data': project.to_dict()})


@project_bp.route('/<int:project_id>', methods=['DELETE'])
def project_delete(project_id):
    """删除项目（连同构建记录）"""
    try:
        deleted = ProjectService.delete_project(project_id)
    except BuildConflictError as e:
        return jsonify({'success': False, 'message': str(e)}), 409
    if not deleted:
        return jsonify({'success': False, 'message': '项目不存在'}), 404
    return jsonify({'success': True, 'message': '项目已删除'})


@project_bp.route('/<int:project_id>/env', methods=['GET'])
def project_env_get(project_id):
    """获取环境变量（值已打码）"""
    if not ProjectService.get_project(project_id):
        return jsonify({'success': False, 'message': '项目不存在'}), 404
    return jsonify({'success': True, 'data': ProjectService.get_env_vars(project_id)})


@project_bp.route('/<int:project_id>/env', methods=['PUT'])
def project_env_put(project_id):
    """整体替换环境变量"""
    if not ProjectService.get_project(project_id):
        return jsonify({'success': False, 'message': '项目不存在'}), 404

    data = request.get_json(silent=True)
    if not isinstance(data, list):
        return jsonify({'success': False, 'message': '请求体必须是 [{key, value}] 列表'}), 400

    try:
        ProjectService.set_env_vars(project_id, data)
        return jsonify({'success': True, 'data': ProjectService.get_env_vars(project_id)})
    except Exception as e:
        logger.exception(f"保存环境变量失败: {e}")
        return jsonify({'success': False, 'message': f'保存失败: {str(e)}'}), 500
