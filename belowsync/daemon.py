"""Below Sync Daemon
-----------------
单进程守护：按成员名单门控，周期性把 below 日志目录打包上传到对象存储。

工作方式：
1) 成员文件监视线程把 `MembershipEvent` 投递到收件箱（首个事件在启动时立即产出）；
2) 定时线程每个周期向收件箱投递一个 `Tick`；收件箱满时丢弃该 Tick（不排队、不计数）；
3) 主循环单线程逐个处理收件箱：
   - 成员事件：门控 = is_member；若门控为真，立即同步一次（不等下一个周期）；
   - Tick：仅当门控为真时同步；
   - 监视关闭（WatchClosed）：记录日志，门控保持最后的值，周期同步照常。
4) 一次同步 = 打包 → 上传；任何失败只记录日志，等待下一个自然触发，不做重试。

关键特性：
- 门控只由主循环线程读写，无需加锁；
- 同一时刻至多一次同步在进行：处理完当前元素才会读取下一个，期间到达的事件在收件箱中排队；
- stop() 之后主循环在下一次迭代退出，不会中断正在进行的同步（由上传截止时间兜底）。
"""

from __future__ import annotations

import queue
import threading
import time
from dataclasses import dataclass, field
from typing import Optional, Union

from belowsync.core.bundler import DirectoryBundler
from belowsync.core.config import Settings
from belowsync.core.errors import SyncError
from belowsync.core.uploader import RemoteUploader
from belowsync.core.watcher import MembershipEvent, MembershipWatcher, WatchClosed
from belowsync.utils.logging import debug, err, log


@dataclass(frozen=True)
class Tick:
    at: float = field(default_factory=time.time)


InboxItem = Union[MembershipEvent, WatchClosed, Tick]

# 主循环检查停止标记的最长间隔（秒）
STOP_POLL = 0.5


class SyncDaemon:
    """同步守护进程。

    - settings: 运行时配置；
    - watcher/bundler/uploader: 三个协作组件；
    - interval: 周期（秒），默认取 settings.upload_frequency；
    - _gate: 是否允许同步，仅主循环线程访问；
    - attempts/failures/last_success_ts: 同步统计，仅用于日志。
    """

    def __init__(
        self,
        settings: Settings,
        watcher: MembershipWatcher,
        bundler: DirectoryBundler,
        uploader: RemoteUploader,
        interval: Optional[float] = None,
        inbox_size: int = 16,
    ) -> None:
        self.st = settings
        self.watcher = watcher
        self.bundler = bundler
        self.uploader = uploader
        self.interval = settings.upload_frequency if interval is None else interval
        self._inbox: "queue.Queue[InboxItem]" = queue.Queue(maxsize=inbox_size)
        self._stop = threading.Event()
        self._gate = False
        self._watch_closed = False
        self._ticker: Optional[threading.Thread] = None
        self.attempts = 0
        self.failures = 0
        self.last_success_ts: float = 0.0

    # -------- 生命周期 --------
    def stop(self) -> None:
        """取消信号：主循环在下一次迭代退出。可在任意线程（含信号处理器）调用。"""
        self._stop.set()

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def _tick_loop(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                self._inbox.put_nowait(Tick())
            except queue.Full:
                debug("inbox full, dropping tick")

    # -------- 主循环 --------
    def run(self) -> int:
        """主运行函数：启动监视与定时器并进入事件循环，直到 stop()。

        成员文件首次解析失败会从这里抛出（启动期错误）。
        """
        log(f"starting below-sync for node {self.st.current_node!r} "
            f"(dir={self.st.below_log_dir}, every {self.interval:g}s)")
        self.watcher.start(self._inbox)
        self._ticker = threading.Thread(target=self._tick_loop, name="sync-ticker", daemon=True)
        self._ticker.start()
        try:
            while not self._stop.is_set():
                try:
                    item = self._inbox.get(timeout=STOP_POLL)
                except queue.Empty:
                    continue
                if self._stop.is_set():
                    break
                self.handle(item)
        finally:
            self._stop.set()
            self._ticker.join()
        log(f"closing syncer ({self.attempts} attempts, {self.failures} failed)")
        return 0

    def handle(self, item: InboxItem) -> None:
        """处理收件箱中的一个元素（主循环线程）。"""
        if isinstance(item, MembershipEvent):
            was = self._gate
            self._gate = item.is_member
            if was != self._gate or not item.triggered_by_change:
                state = "enabled" if self._gate else "disabled"
                cause = "config change" if item.triggered_by_change else "startup"
                log(f"node {self.st.current_node!r} sync {state} ({cause})")
            if self._gate:
                self.sync_once()
        elif isinstance(item, Tick):
            if self._gate:
                self.sync_once()
        elif isinstance(item, WatchClosed):
            if not self._watch_closed:
                self._watch_closed = True
                err("membership watch closed; keeping last membership state")

    def sync_once(self) -> bool:
        """一次完整的同步：打包 → 上传。失败只记录日志，返回是否成功。"""
        self.attempts += 1
        try:
            stream = self.bundler.bundle()
        except SyncError as e:
            self.failures += 1
            err(f"error creating tar.gz of below log dir: {e}")
            return False
        try:
            self.uploader.upload(stream, self.st.object_name, self.st.context_timeout)
        except SyncError as e:
            self.failures += 1
            err(f"error syncing below log dir: {e}")
            return False
        except Exception as e:
            self.failures += 1
            err(f"unexpected error syncing below log dir: {e!r}")
            return False
        finally:
            stream.close()
        self.last_success_ts = time.time()
        return True
