"""目录打包

职责：
- 校验源目录存在且是目录；
- 调用时对目录做一次快照（按名称排序的深度优先列表，不含根目录本身）；
- 后台生产者线程按快照顺序写 tar → gzip → 有界管道，调用方拿到管道读端边读边传，
  内存占用受管道容量约束，与目录大小无关。

失败语义：
- 快照之后任何条目 stat/打开/读取失败（例如列出后被删除）都会中止整个打包，
  错误以 `BundleError` 的形式在读端作为终止性读错误抛出，绝不产出“截断但看似成功”的归档；
- 成功时写入 tar 尾部与 gzip 尾部后再关闭管道，关闭顺序：tar → gzip → 管道；
- 失败时先以错误关闭管道，再关闭 tar/gzip，避免读端读到伪造的结束块。
"""

from __future__ import annotations

import gzip
import os
import stat
import tarfile
import threading
from dataclasses import dataclass
from typing import List

from belowsync.core.errors import BundleError, DirectoryNotFoundError, SourceNotADirectoryError
from belowsync.core.pipe import BlockingPipe, PipeReader, PipeWriter
from belowsync.utils.logging import debug, err, log


DEFAULT_BUFFER_SIZE = 64 * 1024


@dataclass
class ArchiveEntry:
    """快照中单个条目在写入时刻的元数据。"""
    path: str
    relative_path: str  # 以 / 分隔
    is_directory: bool
    size: int
    mode: int  # 权限位
    mtime: int
    uid: int = 0
    gid: int = 0

    @classmethod
    def from_stat(cls, path: str, root: str, st: os.stat_result) -> ArchiveEntry:
        rel = os.path.relpath(path, root).replace(os.sep, "/")
        is_dir = stat.S_ISDIR(st.st_mode)
        return cls(
            path=path,
            relative_path=rel,
            is_directory=is_dir,
            size=0 if is_dir else st.st_size,
            mode=stat.S_IMODE(st.st_mode),
            mtime=int(st.st_mtime),
            uid=st.st_uid,
            gid=st.st_gid,
        )

    def to_tarinfo(self) -> tarfile.TarInfo:
        info = tarfile.TarInfo(self.relative_path)
        info.type = tarfile.DIRTYPE if self.is_directory else tarfile.REGTYPE
        info.size = self.size
        info.mode = self.mode
        info.mtime = self.mtime
        info.uid = self.uid
        info.gid = self.gid
        return info


class DirectoryBundler:
    """把 source_dir 打包为流式 tar.gz。

    - source_dir: 源目录；
    - buffer_size: 管道容量（字节），决定生产者最多领先消费者多少数据。
    """

    def __init__(self, source_dir: str, buffer_size: int = DEFAULT_BUFFER_SIZE) -> None:
        self.source_dir = source_dir
        self.buffer_size = buffer_size

    def bundle(self) -> PipeReader:
        """校验目录、做快照并启动生产者线程，返回归档字节流（读端）。

        调用方负责关闭返回的读端；提前关闭会使生产者中止。
        """
        try:
            st = os.stat(self.source_dir)
        except FileNotFoundError as e:
            raise DirectoryNotFoundError(f"directory {self.source_dir!r} does not exist") from e
        except OSError as e:
            raise BundleError(f"error accessing directory {self.source_dir!r}: {e}") from e
        if not stat.S_ISDIR(st.st_mode):
            raise SourceNotADirectoryError(f"{self.source_dir!r} is not a directory")

        paths = self.create_dir_snapshot()
        debug(f"snapshot of {self.source_dir}: {len(paths)} entries")

        pipe = BlockingPipe(self.buffer_size)
        t = threading.Thread(
            target=self._write_tar, args=(pipe.writer, paths), name="bundle-producer", daemon=True
        )
        t.start()
        return pipe.reader

    def create_dir_snapshot(self) -> List[str]:
        """深度优先列出 source_dir 下所有路径（目录先于其内容，同级按名称排序）。

        符号链接指向的目录不展开。
        """
        paths: List[str] = []

        def walk(d: str) -> None:
            with os.scandir(d) as it:
                entries = sorted(it, key=lambda e: e.name)
            for e in entries:
                paths.append(e.path)
                if e.is_dir(follow_symlinks=False):
                    walk(e.path)

        try:
            walk(self.source_dir)
        except OSError as e:
            raise BundleError(f"error creating snapshot of {self.source_dir!r}: {e}") from e
        return paths

    # -------- 生产者线程 --------
    def _write_tar(self, writer: PipeWriter, paths: List[str]) -> None:
        gz = gzip.GzipFile(fileobj=writer, mode="wb")
        tar = tarfile.open(fileobj=gz, mode="w|", format=tarfile.PAX_FORMAT)
        try:
            for path in paths:
                self._add_entry(tar, path)
            tar.close()
            gz.close()
        except BrokenPipeError:
            err("archive consumer closed the stream, bundle aborted")
            self._abort(writer, tar, gz, BundleError("archive stream closed by consumer"))
            return
        except BundleError as e:
            err(f"bundle aborted: {e}")
            self._abort(writer, tar, gz, e)
            return
        except Exception as e:
            err(f"bundle aborted: {e}")
            self._abort(writer, tar, gz, BundleError(f"error writing archive: {e}"))
            return
        writer.close()
        log(f"bundled {len(paths)} entries from {self.source_dir}")

    @staticmethod
    def _abort(writer: PipeWriter, tar: tarfile.TarFile, gz: gzip.GzipFile, error: BundleError) -> None:
        writer.close_with_error(error)
        # 管道已关闭，剩余写入必然失败
        for closer in (tar.close, gz.close):
            try:
                closer()
            except (OSError, ValueError):
                pass

    def _add_entry(self, tar: tarfile.TarFile, path: str) -> None:
        try:
            st = os.stat(path)
        except OSError as e:
            raise BundleError(f"error accessing file {path!r}: {e}") from e
        if not (stat.S_ISDIR(st.st_mode) or stat.S_ISREG(st.st_mode)):
            raise BundleError(f"unsupported file type for {path!r}")

        entry = ArchiveEntry.from_stat(path, self.source_dir, st)
        info = entry.to_tarinfo()
        if entry.is_directory:
            tar.addfile(info)
            return

        try:
            f = open(path, "rb")
        except OSError as e:
            raise BundleError(f"error opening file {path!r}: {e}") from e
        with f:
            try:
                tar.addfile(info, f)
            except BrokenPipeError:
                raise
            except OSError as e:
                raise BundleError(f"error copying file {path!r}: {e}") from e
