import os
from dotenv import load_dotenv

# 加载 .env 文件
load_dotenv()

DATA_DIR = os.path.expanduser(os.getenv('TBUILD_DATA_DIR', '~/.t-build'))


class Config:
    """应用配置类"""
    # 数据目录（数据库、工作区）
    DATA_DIR = DATA_DIR
    WORK_DIR = os.getenv('TBUILD_WORK_DIR', os.path.join(DATA_DIR, 'workspace'))

    # 数据库配置
    SQLALCHEMY_DATABASE_URI = os.getenv(
        'DATABASE_URL',
        'sqlite:///' + os.path.join(DATA_DIR, 't-build.db')
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # 安全配置
    SECRET_KEY = os.getenv('SECRET_KEY', 'dev-secret-key-change-in-production')
    # 凭证加密密钥，未配置时由 SECRET_KEY 派生
    ENCRYPTION_KEY = os.getenv('TBUILD_ENCRYPTION_KEY')

    # 构建执行配置
    BUILD_MAX_WORKERS = int(os.getenv('BUILD_MAX_WORKERS', '3'))
    BUILD_QUEUE_LIMIT = int(os.getenv('BUILD_QUEUE_LIMIT', '20'))
    LOG_FLUSH_INTERVAL = float(os.getenv('LOG_FLUSH_INTERVAL', '0.5'))
    CHANNEL_GRACE_PERIOD = float(os.getenv('CHANNEL_GRACE_PERIOD', '60'))
    GIT_PULL_TIMEOUT = float(os.getenv('GIT_PULL_TIMEOUT', '30'))
    STREAM_KEEPALIVE = float(os.getenv('STREAM_KEEPALIVE', '15'))

    # JSON配置
    JSON_AS_ASCII = False  # 支持中文
