"""错误类型

分层：
- 启动期（致命）：`ConfigError`、`ConfigAccessError`、`NotAFileError`、`MembershipParseError`
  （后者仅在启动时首次解析失败时致命，运行期重读失败只记录日志）；
- 单次同步（可恢复）：`BundleError` 及其子类、`UploadError` 及其子类，
  由守护进程循环记录后继续运行。
"""


class SyncError(Exception):
    """所有 below-sync 错误的基类。"""


# -------- 配置 / 成员文件 --------
class ConfigError(SyncError):
    """进程配置缺失或非法。"""


class ConfigAccessError(SyncError):
    """成员文件路径无法 stat。"""


class NotAFileError(SyncError):
    """成员文件路径是目录。"""


class MembershipParseError(SyncError):
    """成员文件缺失或内容格式错误。"""


# -------- 打包 --------
class BundleError(SyncError):
    """打包失败；也作为管道读端的终止错误传给消费者。"""


class DirectoryNotFoundError(BundleError):
    pass


class SourceNotADirectoryError(BundleError):
    pass


# -------- 上传 --------
class UploadError(SyncError):
    """上传失败的基类。"""


class DestinationUnavailableError(UploadError):
    """无法获取远端写句柄（桶不存在、无权限、网络不可达等）。"""


class CopyError(UploadError):
    """数据写入远端途中失败。"""


class UploadTimeoutError(UploadError):
    """上传在截止时间内未完成。"""


class FinalizeError(UploadError):
    """数据可能已全部发送，但提交（最终分块）失败。"""
