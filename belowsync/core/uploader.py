"""对象存储上传（GCS JSON API 可续传上传）

职责：
- 打开写句柄：POST 创建可续传会话，拿到会话 URL（失败 → DestinationUnavailableError）；
- 分块拷贝：边读输入流边 PUT 分块（`Content-Range: bytes a-b/*`，服务端回 308），
  内存中最多保留两个分块（失败 → CopyError）；
- 提交：最后一个分块带上总大小，服务端回 200/201 即对象落盘（失败 → FinalizeError）；
- 整个上传受截止时间约束（超时 → UploadTimeoutError），每个请求的超时都不超过剩余时间。

同名对象直接覆盖，不做版本保留；失败时不清理远端的半成品会话。
输入流抛出的读错误（例如打包失败的 BundleError）原样向上传播。
"""

from __future__ import annotations

import time
from typing import Any, BinaryIO, Dict, Optional

import httpx

from belowsync.core.errors import (
    CopyError,
    DestinationUnavailableError,
    FinalizeError,
    UploadTimeoutError,
)
from belowsync.utils.logging import debug, log, mask_upload_id


DEFAULT_BASE_URL = "https://storage.googleapis.com"
# 可续传上传的中间分块必须是 256 KiB 的整数倍
CHUNK_GRANULARITY = 256 * 1024
DEFAULT_CHUNK_SIZE = 32 * CHUNK_GRANULARITY  # 8 MiB
CONTENT_TYPE = "application/gzip"


def read_full(stream: BinaryIO, size: int) -> bytes:
    """从流中读满 size 字节，除非先遇到 EOF。"""
    parts = []
    remaining = size
    while remaining > 0:
        data = stream.read(remaining)
        if not data:
            break
        parts.append(data)
        remaining -= len(data)
    return b"".join(parts)


class RemoteUploader:
    """对象存储上传客户端

    - bucket: 桶名；
    - base_url: 存储端点（可指向兼容的模拟服务）；
    - chunk_size: 分块大小，必须是 256 KiB 的整数倍；
    - client: 可注入的 httpx.Client（测试时配合 MockTransport）；
    - headers: 附加请求头。
    """

    def __init__(
        self,
        bucket: str,
        base_url: str = DEFAULT_BASE_URL,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        client: Optional[httpx.Client] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        if chunk_size <= 0 or chunk_size % CHUNK_GRANULARITY:
            raise ValueError(f"chunk_size must be a positive multiple of {CHUNK_GRANULARITY}")
        self.bucket = bucket
        self.base_url = base_url.rstrip("/")
        self.chunk_size = chunk_size
        self.headers = {"User-Agent": "below-sync/1.0"}
        if headers:
            self.headers.update(headers)
        self._client = client or httpx.Client()

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> RemoteUploader:
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # -------- 桶信息 --------
    def bucket_info(self) -> Dict[str, Any]:
        """获取桶元数据（启动时打印用）。"""
        url = f"{self.base_url}/storage/v1/b/{self.bucket}"
        try:
            resp = self._client.get(url, headers=self.headers, timeout=30)
            resp.raise_for_status()
            return resp.json()
        except (httpx.HTTPError, ValueError) as e:
            raise DestinationUnavailableError(f"failed to get bucket attrs for {self.bucket!r}: {e}") from e

    # -------- 上传 --------
    def upload(self, stream: BinaryIO, object_name: str, deadline: float) -> int:
        """把整个流上传为 object_name，返回上传字节数。

        参数 deadline 为本次上传的总时限（秒），只在每个 HTTP 请求之前检查，
        且每个请求的超时不超过剩余时间。等待输入流产出数据（read_full 阻塞于
        打包线程）的时间不受其约束：打包很慢时，上传可能超过 deadline 才结束。
        """
        t_end = time.monotonic() + deadline
        session_url = self._open_session(object_name, t_end)
        debug(f"upload session for {object_name}: {mask_upload_id(session_url)}")

        offset = 0
        chunk = read_full(stream, self.chunk_size)
        while True:
            nxt = read_full(stream, self.chunk_size) if len(chunk) == self.chunk_size else b""
            if not nxt:
                total = offset + len(chunk)
                self._put_chunk(session_url, chunk, offset, total, t_end)
                log(f"successfully uploaded {object_name!r} ({total} bytes) to bucket {self.bucket!r}")
                return total
            self._put_chunk(session_url, chunk, offset, None, t_end)
            offset += len(chunk)
            chunk = nxt

    def _remaining(self, t_end: float, what: str) -> float:
        remaining = t_end - time.monotonic()
        if remaining <= 0:
            raise UploadTimeoutError(f"deadline exceeded while {what}")
        return remaining

    def _open_session(self, object_name: str, t_end: float) -> str:
        url = f"{self.base_url}/upload/storage/v1/b/{self.bucket}/o"
        headers = dict(self.headers)
        headers["X-Upload-Content-Type"] = CONTENT_TYPE
        timeout = self._remaining(t_end, f"opening writer for {object_name!r}")
        try:
            resp = self._client.post(
                url,
                params={"uploadType": "resumable", "name": object_name},
                headers=headers,
                json={"name": object_name, "contentType": CONTENT_TYPE},
                timeout=timeout,
            )
        except httpx.TimeoutException as e:
            raise UploadTimeoutError(f"timed out opening writer for {object_name!r}: {e}") from e
        except httpx.HTTPError as e:
            raise DestinationUnavailableError(f"failed to get object writer for {object_name!r}: {e}") from e
        if not resp.is_success:
            raise DestinationUnavailableError(
                f"failed to get object writer for {object_name!r}: HTTP {resp.status_code}"
            )
        session_url = resp.headers.get("Location")
        if not session_url:
            raise DestinationUnavailableError(f"no upload session returned for {object_name!r}")
        return session_url

    def _put_chunk(self, session_url: str, chunk: bytes, offset: int, total: Optional[int], t_end: float) -> None:
        """PUT 一个分块；total 不为 None 表示最后一个分块（提交）。"""
        final = total is not None
        size = "*" if total is None else str(total)
        if chunk:
            content_range = f"bytes {offset}-{offset + len(chunk) - 1}/{size}"
        else:
            content_range = f"bytes */{size}"
        headers = dict(self.headers)
        headers["Content-Range"] = content_range
        what = "finalizing upload" if final else f"copying bytes at offset {offset}"
        timeout = self._remaining(t_end, what)
        try:
            resp = self._client.put(session_url, content=chunk, headers=headers, timeout=timeout)
        except httpx.TimeoutException as e:
            raise UploadTimeoutError(f"timed out {what}: {e}") from e
        except httpx.HTTPError as e:
            if final:
                raise FinalizeError(f"failed to close writer: {e}") from e
            raise CopyError(f"failed to copy archive to bucket: {e}") from e

        if final:
            if resp.status_code not in (200, 201):
                raise FinalizeError(f"failed to close writer: HTTP {resp.status_code}")
            return
        if resp.status_code != 308:
            raise CopyError(f"failed to copy archive to bucket: HTTP {resp.status_code}")
        expected = f"bytes=0-{offset + len(chunk) - 1}"
        persisted = resp.headers.get("Range")
        if persisted is not None and persisted != expected:
            raise CopyError(f"server persisted {persisted!r}, expected {expected!r}")
