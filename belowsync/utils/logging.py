"""简单日志工具：统一输出格式，并对上传会话 URL 进行掩码。"""

import os
import re
import sys
from datetime import datetime, timezone


_UPLOAD_ID_RE = re.compile(r"(upload_id=)[^&\s]+")


def _now():
    return datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


def log(msg: str):
    """标准输出日志（单行）。"""
    sys.stdout.write(f"[{_now()}] [below-sync] {msg}\n")
    sys.stdout.flush()


def err(msg: str):
    """标准错误日志（单行）。"""
    sys.stderr.write(f"[{_now()}] [below-sync] ERROR: {msg}\n")
    sys.stderr.flush()


def debug(msg: str):
    """调试日志：仅在设置了 BELOW_SYNC_DEBUG 时输出。"""
    if os.environ.get("BELOW_SYNC_DEBUG"):
        sys.stdout.write(f"[{_now()}] [below-sync] DEBUG: {msg}\n")
        sys.stdout.flush()


def mask_upload_id(s: str) -> str:
    """在日志中掩码可续传上传会话 URL 中的 upload_id。

    会话 URL 本身即是写入凭据（持有者可继续写入对象），
    形如 `https://.../o?uploadType=resumable&upload_id=ABCD`，
    将 upload_id 的值替换为 `***`。
    """
    if not s:
        return s
    return _UPLOAD_ID_RE.sub(r"\1***", s)
