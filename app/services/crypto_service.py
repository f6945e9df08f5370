"""
凭证加密服务
使用 Fernet 对存储的密码、SSH 私钥和环境变量加密
"""

import base64
import hashlib

from cryptography.fernet import Fernet, InvalidToken
from flask import current_app


def _derive_key(raw):
    digest = hashlib.sha256(raw.encode('utf-8')).digest()
    return base64.urlsafe_b64encode(digest)


def _get_fernet():
    raw = current_app.config.get('ENCRYPTION_KEY') or current_app.config['SECRET_KEY']
    return Fernet(_derive_key(raw))


def encrypt(plaintext):
    """加密明文，返回密文字符串"""
    return _get_fernet().encrypt(plaintext.encode('utf-8')).decode('ascii')


def decrypt(ciphertext):
    """解密密文，密钥不匹配或格式错误时抛出 ValueError"""
    try:
        return _get_fernet().decrypt(ciphertext.encode('ascii')).decode('utf-8')
    except (InvalidToken, ValueError) as exc:
        raise ValueError('Unable to decrypt secret') from exc
