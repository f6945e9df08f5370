"""
构建路由
"""

from flask import Blueprint, Response, jsonify, request, stream_with_context, current_app
from app.services.build_service import BuildService
from app.services.errors import (
    ProjectNotFoundError, BuildNotFoundError, InvalidBuildConfigError,
    BuildConflictError, BuildQueueFullError,
)
from app.services.live_stream import format_sse
import logging

logger = logging.getLogger(__name__)

build_bp = Blueprint('build', __name__)


def _error(message, status):
    return jsonify({
        'success': False,
        'message': message
    }), status


@build_bp.route('/api/builds', methods=['GET'])
def api_get_builds():
    """获取构建列表API"""
    try:
        project_id = request.args.get('project_id', type=int)
        builds = BuildService.get_all_builds(project_id=project_id)
        return jsonify({
            'success': True,
            'data': builds
        })
    except Exception as e:
        logger.exception(f"获取构建列表失败: {e}")
        return _error(f'获取构建列表失败: {str(e)}', 500)


@build_bp.route('/api/builds', methods=['POST'])
def api_start_build():
    """触发构建"""
    data = request.get_json(silent=True) or {}
    project_id = data.get('project_id')
    if project_id is None:
        return _error('缺少必填参数: project_id', 400)

    try:
        build = BuildService.start_build(project_id)
        return jsonify({
            'success': True,
            'data': build.to_dict(),
            'message': '构建已启动'
        }), 201
    except ProjectNotFoundError as e:
        return _error(str(e), 404)
    except BuildConflictError as e:
        return _error(str(e), 409)
    except BuildQueueFullError as e:
        return _error(str(e), 503)
    except InvalidBuildConfigError as e:
        return _error(str(e), 400)
    except Exception as e:
        logger.exception(f"启动构建失败: {e}")
        return _error(f'启动构建失败: {str(e)}', 500)


@build_bp.route('/api/builds/<build_id>', methods=['GET'])
def api_get_build(build_id):
    """获取构建详情"""
    try:
        build = BuildService.get_build(build_id)
        return jsonify({
            'success': True,
            'data': build.to_dict()
        })
    except BuildNotFoundError as e:
        return _error(str(e), 404)


@build_bp.route('/api/builds/<build_id>', methods=['DELETE'])
def api_delete_build(build_id):
    """删除构建记录及日志"""
    try:
        BuildService.delete_build(build_id)
        return jsonify({
            'success': True,
            'message': '构建已删除'
        })
    except BuildNotFoundError as e:
        return _error(str(e), 404)
    except BuildConflictError as e:
        return _error(str(e), 409)
    except Exception as e:
        logger.exception(f"删除构建失败: {e}")
        return _error(f'删除构建失败: {str(e)}', 500)


@build_bp.route('/api/builds/<build_id>/cancel', methods=['POST'])
def api_cancel_build(build_id):
    """取消构建"""
    try:
        BuildService.get_build(build_id)
    except BuildNotFoundError as e:
        return _error(str(e), 404)

    cancelled = BuildService.cancel_build(build_id)
    return jsonify({
        'success': True,
        'cancelled': cancelled
    })


@build_bp.route('/api/builds/<build_id>/logs', methods=['GET'])
def api_stream_logs(build_id):
    """实时日志流（text/event-stream）

    支持 Last-Event-ID 请求头或 after 参数断点续传。
    """
    after_seq = request.args.get('after', type=int)
    if after_seq is None:
        after_seq = request.headers.get('Last-Event-ID', type=int) or 0

    try:
        stream = BuildService.open_live_stream(
            build_id,
            after_seq=after_seq,
            keepalive=current_app.config.get('STREAM_KEEPALIVE'),
        )
    except BuildNotFoundError:
        return Response('Build not found', status=404)

    def generate():
        for event in stream.events():
            yield format_sse(event)

    return Response(
        stream_with_context(generate()),
        mimetype='text/event-stream',
        headers={
            'Cache-Control': 'no-cache',
            'Connection': 'keep-alive',
            'X-Accel-Buffering': 'no',
        },
    )


@build_bp.route('/api/builds/<build_id>/logs.txt', methods=['GET'])
def api_download_logs(build_id):
    """纯文本日志（去除颜色码）"""
    try:
        text = BuildService.get_log_text(build_id)
    except BuildNotFoundError:
        return Response('Build not found', status=404)
    return Response(text, mimetype='text/plain')
