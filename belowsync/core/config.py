"""配置加载

职责：
- 读取命令行参数（--config-path/--bucket-name/--upload-frequency/--context-timeout/
  --below-log-dir/--node-name/--storage-url/--poll-interval）；
- 未给出的参数回落到环境变量（BELOW_SYNC_*），再回落到默认值；
- 解析 Go 风格时长字符串（`90s`、`1m30s`、`500ms`），并校验取值；
- 产出不可变的 `Settings`，启动后不再变化。

任何缺失/非法配置都抛出 `ConfigError`，由入口决定退出。
"""

from __future__ import annotations

import argparse
import math
import os
import re
import socket
from dataclasses import dataclass
from typing import Mapping, Optional, Sequence

from belowsync.core.errors import ConfigError


DEFAULT_UPLOAD_FREQUENCY = "1m"
DEFAULT_CONTEXT_TIMEOUT = "1m"
DEFAULT_BELOW_LOG_DIR = "/var/log/below/store"
DEFAULT_STORAGE_URL = "https://storage.googleapis.com"
DEFAULT_POLL_INTERVAL = "1s"

# 参数名 → 环境变量
ENV_VARS = {
    "config_path": "BELOW_SYNC_CONFIG_PATH",
    "bucket_name": "BELOW_SYNC_BUCKET",
    "upload_frequency": "BELOW_SYNC_INTERVAL",
    "context_timeout": "BELOW_SYNC_TIMEOUT",
    "below_log_dir": "BELOW_LOG_DIR",
    "node_name": "BELOW_SYNC_NODE",
    "storage_url": "BELOW_SYNC_STORAGE_URL",
    "poll_interval": "BELOW_SYNC_POLL_INTERVAL",
}

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
_UNIT_SECONDS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


@dataclass(frozen=True)
class Settings:
    config_path: str
    bucket_name: str
    upload_frequency: float  # 秒
    context_timeout: float  # 秒，单次上传截止时间
    below_log_dir: str
    current_node: str
    storage_url: str = DEFAULT_STORAGE_URL
    poll_interval: float = 1.0  # 成员文件轮询间隔（秒）

    @property
    def object_name(self) -> str:
        """每个节点一个对象，每次同步覆盖。"""
        return f"below_{self.current_node}.tar.gz"


def parse_duration(value: str) -> float:
    """解析时长为秒数。

    支持 Go 风格组合（`1h30m`、`1m30s`、`250ms`）与纯数字（按秒）。
    """
    s = str(value).strip()
    if not s:
        raise ConfigError("empty duration")
    try:
        seconds = float(s)
    except ValueError:
        pass
    else:
        if not math.isfinite(seconds):
            raise ConfigError(f"invalid duration {value!r}")
        return seconds
    pos = 0
    total = 0.0
    for m in _DURATION_PART.finditer(s):
        if m.start() != pos:
            break
        total += float(m.group(1)) * _UNIT_SECONDS[m.group(2)]
        pos = m.end()
    if pos != len(s):
        raise ConfigError(f"invalid duration {value!r}")
    return total


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="belowsync",
        description="Upload the below store as a tar.gz while this node is listed in the membership file.",
    )
    p.add_argument("--config-path", help="the path to the membership file (required)")
    p.add_argument("--bucket-name", help="the name of the storage bucket (required)")
    p.add_argument("--upload-frequency", help=f"the frequency for uploads (default {DEFAULT_UPLOAD_FREQUENCY})")
    p.add_argument("--context-timeout", help=f"the timeout for one upload (default {DEFAULT_CONTEXT_TIMEOUT})")
    p.add_argument("--below-log-dir", help=f"the directory containing the below log files (default {DEFAULT_BELOW_LOG_DIR})")
    p.add_argument("--node-name", help="identity of this node (default: hostname)")
    p.add_argument("--storage-url", help=f"object store endpoint (default {DEFAULT_STORAGE_URL})")
    p.add_argument("--poll-interval", help=f"membership file poll interval (default {DEFAULT_POLL_INTERVAL})")
    return p


def _pick(args: argparse.Namespace, env: Mapping[str, str], key: str, default: Optional[str] = None) -> Optional[str]:
    """命令行 → 环境变量 → 默认值。空字符串视为未设置。"""
    v = getattr(args, key)
    if v:
        return v
    v = env.get(ENV_VARS[key], "")
    if v.strip():
        return v.strip()
    return default


def load_settings(argv: Optional[Sequence[str]] = None, env: Optional[Mapping[str, str]] = None) -> Settings:
    """加载运行时配置。

    参数：
    - argv: 命令行参数（不含程序名），默认取 sys.argv；
    - env: 环境变量映射，默认取 os.environ。
    """
    env = os.environ if env is None else env
    args = build_parser().parse_args(argv)

    config_path = _pick(args, env, "config_path")
    bucket_name = _pick(args, env, "bucket_name")
    missing = [flag for flag, v in (("--config-path", config_path), ("--bucket-name", bucket_name)) if not v]
    if missing:
        raise ConfigError(f"required flags are not set: {', '.join(missing)}")

    upload_frequency = parse_duration(_pick(args, env, "upload_frequency", DEFAULT_UPLOAD_FREQUENCY))
    if upload_frequency <= 0:
        raise ConfigError("upload-frequency must be greater than 0")
    context_timeout = parse_duration(_pick(args, env, "context_timeout", DEFAULT_CONTEXT_TIMEOUT))
    if context_timeout <= 0:
        raise ConfigError("context-timeout must be greater than 0")
    poll_interval = parse_duration(_pick(args, env, "poll_interval", DEFAULT_POLL_INTERVAL))
    if poll_interval <= 0:
        raise ConfigError("poll-interval must be greater than 0")

    node = _pick(args, env, "node_name")
    if not node:
        try:
            node = socket.gethostname()
        except OSError as e:
            raise ConfigError(f"error getting hostname: {e}") from e
    if not node:
        raise ConfigError("node identity is empty")

    return Settings(
        config_path=os.path.abspath(config_path),
        bucket_name=bucket_name,
        upload_frequency=upload_frequency,
        context_timeout=context_timeout,
        below_log_dir=os.path.abspath(_pick(args, env, "below_log_dir", DEFAULT_BELOW_LOG_DIR)),
        current_node=node,
        storage_url=_pick(args, env, "storage_url", DEFAULT_STORAGE_URL).rstrip("/"),
        poll_interval=poll_interval,
    )
