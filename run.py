from app import create_app
import atexit
import logging
import os

# 配置日志
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)

# 设置第三方库的日志级别为WARNING，避免过多输出
logging.getLogger('git').setLevel(logging.WARNING)
logging.getLogger('werkzeug').setLevel(logging.WARNING)

app = create_app()

# 退出时终止仍在运行的构建进程
atexit.register(app.extensions['build_manager'].shutdown, False)

if __name__ == '__main__':
    # 日志通道在进程内存中，只能单进程运行；关闭 reloader 避免启动两个进程
    app.run(
        debug=os.getenv('FLASK_DEBUG') == '1',
        host=os.getenv('HOST', '0.0.0.0'),
        port=int(os.getenv('PORT', '5000')),
        threaded=True,
        use_reloader=False,
    )
