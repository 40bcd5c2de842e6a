"""成员文件监视

职责：
- 解析成员文件（YAML，键 `nodes` 下的节点名列表），判断当前节点是否在列；
- 启动时立即评估一次并产出首个事件（triggered_by_change=False）；
- 之后轮询文件状态，仅“写入型”变化触发重新解析并产出事件；
- 关闭后在通道中放入 `WatchClosed`，不再产出任何事件。

事件判定（按 stat 比较，状态连续两次轮询不变才算落定）：
- 同一 inode 上 (mtime, size) 变化 → 写入；
- inode 变化（重命名/替换）、文件消失、仅元数据变化（chmod）→ 忽略，只更新基线；
- 注意：只改 mtime 的 `touch` 无法与写入区分，按写入处理（重新解析并产出事件）。

解析失败（文件缺失、内容非法）只记录日志，不产出事件，门控状态保持不变。
"""

from __future__ import annotations

import os
import queue
import stat
import threading
from dataclasses import dataclass
from typing import List, Optional, Tuple, Union

import yaml

from belowsync.core.errors import ConfigAccessError, MembershipParseError, NotAFileError
from belowsync.utils.logging import debug, err, log


NODES_KEY = "nodes"


@dataclass(frozen=True)
class MembershipEvent:
    triggered_by_change: bool
    is_member: bool


@dataclass(frozen=True)
class WatchClosed:
    """监视已结束：通道中最后一个元素。"""


WatchItem = Union[MembershipEvent, WatchClosed]


def read_membership(path: str) -> List[str]:
    """读取并解析成员文件，返回节点名列表（不缓存）。

    - 缺少 `nodes` 键返回空列表，其他键忽略；
    - 以字节读入，由 YAML 解析器负责解码（非法 UTF-8 同样视为内容非法）；
    - 文件不可读、不是合法 YAML、顶层不是映射、`nodes` 不是列表 → MembershipParseError。
    """
    try:
        with open(path, "rb") as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise MembershipParseError(f"error reading config file: {e}") from e
    except yaml.YAMLError as e:
        raise MembershipParseError(f"error loading config file: {e}") from e

    if data is None:
        return []
    if not isinstance(data, dict):
        raise MembershipParseError("error loading config file: top level must be a mapping")
    nodes = data.get(NODES_KEY)
    if nodes is None:
        return []
    if not isinstance(nodes, list):
        raise MembershipParseError(f"error loading config file: `{NODES_KEY}` must be a list")
    return [str(n) for n in nodes if n is not None]


def is_member(path: str, node: str) -> bool:
    return node in read_membership(path)


# (inode, device, mtime_ns, size)
_Stamp = Tuple[int, int, int, int]


def _stamp(st: os.stat_result) -> _Stamp:
    return (st.st_ino, st.st_dev, st.st_mtime_ns, st.st_size)


class MembershipWatcher:
    """成员文件监视器。

    - config_path: 成员文件路径（必须存在且不是目录）；
    - current_node: 当前节点名；
    - poll_interval: 轮询间隔（秒）。
    """

    def __init__(self, config_path: str, current_node: str, poll_interval: float = 1.0) -> None:
        try:
            st = os.stat(config_path)
        except OSError as e:
            raise ConfigAccessError(f"error accessing config path {config_path!r}: {e}") from e
        if stat.S_ISDIR(st.st_mode):
            raise NotAFileError(f"config path {config_path!r} is a directory, expected a file")

        self.config_path = config_path
        self.current_node = current_node
        self.poll_interval = poll_interval
        # _baseline: 上次落定的状态；_last_seen: 上次轮询看到的状态
        self._baseline: Optional[_Stamp] = _stamp(st)
        self._last_seen: Optional[_Stamp] = self._baseline
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self, channel: "Optional[queue.Queue[WatchItem]]" = None) -> "queue.Queue[WatchItem]":
        """评估当前成员状态并启动监视线程，返回事件通道。

        首次评估失败直接抛出 MembershipParseError（启动期错误）。
        若传入 channel，则事件写入该队列（便于与定时器合并到同一收件箱）。
        """
        if self._thread is not None:
            raise RuntimeError("watcher already started")
        member = is_member(self.config_path, self.current_node)
        ch: "queue.Queue[WatchItem]" = channel if channel is not None else queue.Queue(maxsize=1)

        self._thread = threading.Thread(
            target=self._run, args=(ch, member), name="membership-watcher", daemon=True
        )
        self._thread.start()
        return ch

    def close(self) -> None:
        """停止监视；通道随后收到 WatchClosed。"""
        self._stop.set()

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    # -------- 监视线程 --------
    def _run(self, ch: "queue.Queue[WatchItem]", member: bool) -> None:
        try:
            self._put(ch, MembershipEvent(triggered_by_change=False, is_member=member))
            while not self._stop.wait(self.poll_interval):
                if self._is_write():
                    self._on_write(ch)
        finally:
            try:
                ch.put(WatchClosed(), timeout=5)
            except queue.Full:
                err("membership channel full, WatchClosed not delivered")
            log("membership watch closed")

    def _put(self, ch: "queue.Queue[WatchItem]", item: WatchItem) -> None:
        """阻塞投递；关闭时放弃尚未送达的事件。"""
        while not self._stop.is_set():
            try:
                ch.put(item, timeout=0.2)
                return
            except queue.Full:
                continue

    def _is_write(self) -> bool:
        """比较文件状态与基线，判断是否发生写入。

        状态需连续两次轮询保持不变才算“落定”，避免读到写了一半的文件，
        也把一次“截断 + 写入 + 改时间”合并为一个事件。
        """
        try:
            cur: Optional[_Stamp] = _stamp(os.stat(self.config_path))
        except FileNotFoundError:
            cur = None
        except OSError as e:
            err(f"error from watcher: {e}")
            return False

        prev_seen, self._last_seen = self._last_seen, cur
        if cur != prev_seen or cur == self._baseline:
            return False

        prev, self._baseline = self._baseline, cur
        if cur is None:
            debug(f"config file {self.config_path} removed, ignoring")
            return False
        if prev is None or cur[:2] != prev[:2]:
            debug(f"config file {self.config_path} replaced, ignoring")
            return False
        return True

    def _on_write(self, ch: "queue.Queue[WatchItem]") -> None:
        try:
            member = is_member(self.config_path, self.current_node)
        except MembershipParseError as e:
            err(f"error checking if node is in config: {e}")
            return
        debug(f"config changed, node {self.current_node!r} member={member}")
        self._put(ch, MembershipEvent(triggered_by_change=True, is_member=member))
