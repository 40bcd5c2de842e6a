"""入口：`python -m belowsync`

启动顺序：加载配置 → 创建成员文件监视器 → 打印桶信息 → 注册信号 → 进入守护循环。
启动期错误（配置非法、成员文件不可用）直接退出（返回码 1）；运行期错误只记录日志。
"""

from __future__ import annotations

import signal
import sys
from typing import Optional, Sequence

from belowsync.core.bundler import DirectoryBundler
from belowsync.core.config import load_settings
from belowsync.core.errors import DestinationUnavailableError, SyncError
from belowsync.core.uploader import RemoteUploader
from belowsync.core.watcher import MembershipWatcher
from belowsync.daemon import SyncDaemon
from belowsync.utils.logging import err, log


def _log_bucket_attrs(uploader: RemoteUploader) -> None:
    """打印桶信息；失败不致命，上传时会再次报告。"""
    try:
        attrs = uploader.bucket_info()
    except DestinationUnavailableError as e:
        err(str(e))
        return
    log(f"bucket {uploader.bucket!r}:")
    for key in sorted(attrs):
        log(f"\t{key}: {attrs[key]}")


def main(argv: Optional[Sequence[str]] = None) -> int:
    try:
        st = load_settings(argv)
        watcher = MembershipWatcher(st.config_path, st.current_node, poll_interval=st.poll_interval)
    except SyncError as e:
        err(f"startup failed: {e}")
        return 1

    with RemoteUploader(st.bucket_name, base_url=st.storage_url) as uploader:
        _log_bucket_attrs(uploader)
        daemon = SyncDaemon(st, watcher, DirectoryBundler(st.below_log_dir), uploader)

        def _on_signal(signum, _frame):
            log(f"received signal {signum}, stopping")
            daemon.stop()

        signal.signal(signal.SIGINT, _on_signal)
        signal.signal(signal.SIGTERM, _on_signal)
        try:
            return daemon.run()
        except SyncError as e:
            err(f"startup failed: {e}")
            return 1
        finally:
            watcher.close()


if __name__ == "__main__":
    sys.exit(main())
