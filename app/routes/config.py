from flask import Blueprint, request, jsonify
from app.services.project_service import ProjectService
import logging

config_bp = Blueprint('config', __name__, url_prefix='/api/settings')

logger = logging.getLogger(__name__)


@config_bp.route('', methods=['GET'])
def global_config():
    """全局配置（凭证不返回明文）"""
    return jsonify({
        'success': True,
        'data': {
            'work_dir': ProjectService.get_work_dir(),
            'git_credentials': [c.to_dict() for c in ProjectService.get_all_credentials()],
        }
    })


@config_bp.route('', methods=['PUT'])
def update_global_config():
    data = request.get_json(silent=True) or {}
    try:
        ProjectService.set_work_dir(data.get('work_dir'))
        return jsonify({'success': True, 'data': {'work_dir': ProjectService.get_work_dir()}})
    except Exception as e:
        logger.exception(f"保存配置失败: {e}")
        return jsonify({'success': False, 'message': f'保存失败: {str(e)}'}), 500


@config_bp.route('/credentials', methods=['POST'])
def add_credential():
    """添加Git凭证"""
    data = request.get_json(silent=True) or {}
    try:
        credential = ProjectService.add_credential(data)
        return jsonify({'success': True, 'data': credential.to_dict()}), 201
    except ValueError as e:
        return jsonify({'success': False, 'message': str(e)}), 400


@config_bp.route('/credentials/<int:credential_id>', methods=['DELETE'])
def delete_credential(credential_id):
    if not ProjectService.delete_credential(credential_id):
        return jsonify({'success': False, 'message': '凭证不存在'}), 404
    return jsonify({'success': True, 'message': '凭证已删除'})
