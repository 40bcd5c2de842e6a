"""有界阻塞字节管道

生产者线程写、消费者线程读，缓冲区容量固定：
- `write` 在缓冲区满时阻塞，直到消费者读走数据（背压）；
- `read` 在缓冲区空时阻塞，直到有数据或写端关闭；
- 写端 `close()` → 读端读完剩余数据后得到 EOF（b""）；
- 写端 `close_with_error(exc)` → 读端读完剩余数据后抛出 exc（终止性读错误）；
- 读端 `close()` → 之后的写入抛出 BrokenPipeError，生产者据此中止。
"""

from __future__ import annotations

import io
import threading
from typing import Optional


class BlockingPipe:
    def __init__(self, capacity: int = 64 * 1024) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self._buf = bytearray()
        self._cond = threading.Condition()
        self._write_closed = False
        self._read_closed = False
        self._error: Optional[BaseException] = None
        self.reader = PipeReader(self)
        self.writer = PipeWriter(self)

    # -------- 写端 --------
    def write(self, data) -> int:
        view = memoryview(data).cast("B")
        total = len(view)
        pos = 0
        with self._cond:
            while pos < total:
                while len(self._buf) >= self.capacity and not self._read_closed and not self._write_closed:
                    self._cond.wait()
                if self._read_closed:
                    raise BrokenPipeError("read end of pipe closed")
                if self._write_closed:
                    raise ValueError("write to closed pipe")
                n = min(self.capacity - len(self._buf), total - pos)
                self._buf += view[pos:pos + n]
                pos += n
                self._cond.notify_all()
        return total

    def close_writer(self, error: Optional[BaseException] = None) -> None:
        """关闭写端；首次关闭时的 error 生效，重复关闭无副作用。"""
        with self._cond:
            if self._write_closed:
                return
            self._write_closed = True
            self._error = error
            self._cond.notify_all()

    # -------- 读端 --------
    def read(self, n: int = -1) -> bytes:
        with self._cond:
            while not self._buf and not self._write_closed and not self._read_closed:
                self._cond.wait()
            if self._read_closed:
                raise ValueError("read from closed pipe")
            if not self._buf:
                if self._error is not None:
                    raise self._error
                return b""
            if n is None or n < 0 or n >= len(self._buf):
                n = len(self._buf)
            chunk = bytes(self._buf[:n])
            del self._buf[:n]
            self._cond.notify_all()
            return chunk

    def close_reader(self) -> None:
        with self._cond:
            self._read_closed = True
            self._buf.clear()
            self._cond.notify_all()


class PipeWriter(io.RawIOBase):
    """管道写端（文件对象接口，可交给 gzip.GzipFile）。"""

    def __init__(self, pipe: BlockingPipe) -> None:
        super().__init__()
        self._pipe = pipe

    def writable(self) -> bool:
        return True

    def write(self, b) -> int:
        return self._pipe.write(b)

    def close_with_error(self, error: BaseException) -> None:
        self._pipe.close_writer(error)
        super().close()

    def close(self) -> None:
        self._pipe.close_writer()
        super().close()


class PipeReader(io.RawIOBase):
    """管道读端。`read(n)` 可能返回少于 n 字节；EOF 返回 b""。"""

    def __init__(self, pipe: BlockingPipe) -> None:
        super().__init__()
        self._pipe = pipe

    def readable(self) -> bool:
        return True

    def read(self, n: int = -1) -> bytes:
        return self._pipe.read(n)

    def readall(self) -> bytes:
        chunks = []
        while True:
            chunk = self._pipe.read()
            if not chunk:
                return b"".join(chunks)
            chunks.append(chunk)

    def readinto(self, b) -> int:
        chunk = self._pipe.read(len(b))
        b[:len(chunk)] = chunk
        return len(chunk)

    def close(self) -> None:
        if not self.closed:
            self._pipe.close_reader()
        super().close()
