"""MagnetSync - RSS 磁力链接订阅与 123 云盘离线下载."""

__version__ = "0.1.0"
