"""belowsync 包：按成员名单门控，把 below 日志目录周期性打包上传到对象存储。

推荐直接运行：
  `python -m belowsync --config-path nodes.yaml --bucket-name my-bucket`

包含模块：
- `belowsync.daemon`：守护进程核心逻辑（成员门控 + 周期定时 + 单线程同步循环）。
- `belowsync.core.watcher`：监视成员文件，产出成员事件。
- `belowsync.core.bundler` / `belowsync.core.pipe`：目录快照流式打包为 tar.gz。
- `belowsync.core.uploader`：可续传分块上传到对象存储（httpx）。
- `belowsync.core.config`：配置加载（命令行参数 + 环境变量）。
"""

__version__ = "0.1.0"
