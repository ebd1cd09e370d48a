"""
日志配置和初始化

每条记录经 ComponentFilter 补充 component 字段，默认格式形如:
2024-03-15 09:30:00,123 INFO    [MemoryStore] Saved memory 12 (profile/name) for u1
"""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from .handlers import ColoredConsoleHandler, ComponentFilter, ErrorOnlyHandler

DEFAULT_LOG_FORMAT = "%(asctime)s %(levelname)-7s [%(component)s] %(message)s"

# 第三方库只保留 WARNING 及以上
QUIET_LOGGERS = ("httpx", "httpcore", "aiosqlite", "asyncio")


def _attach(
    root_logger: logging.Logger,
    handler: logging.Handler,
    level: int,
    formatter: logging.Formatter,
    component_filter: ComponentFilter,
) -> None:
    handler.setLevel(level)
    handler.setFormatter(formatter)
    handler.addFilter(component_filter)
    root_logger.addHandler(handler)


def setup_logging(
    log_dir: Path | None = None,
    log_level: str = "INFO",
    log_format: str = DEFAULT_LOG_FORMAT,
    log_file_prefix: str = "structmem",
    log_max_size_mb: int = 10,
    log_backup_count: int = 30,
    log_to_console: bool = True,
    log_to_file: bool = True,
) -> logging.Logger:
    """
    配置 structmem 日志

    Args:
        log_dir: 日志目录，为空时不写文件
        log_level: 根日志级别
        log_format: 格式串，可使用 %(component)s
        log_file_prefix: 主日志文件名前缀（<prefix>.log）
        log_max_size_mb: 主日志单文件上限（MB）
        log_backup_count: 轮转保留份数
        log_to_console: 输出到 stderr（彩色）
        log_to_file: 写主日志和 error.log

    Returns:
        根日志记录器
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))
    root_logger.handlers.clear()

    formatter = logging.Formatter(log_format)
    component_filter = ComponentFilter()

    if log_to_console:
        _attach(
            root_logger, ColoredConsoleHandler(sys.stderr),
            logging.DEBUG, formatter, component_filter,
        )

    if log_to_file and log_dir:
        log_dir = Path(log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)

        _attach(
            root_logger,
            RotatingFileHandler(
                log_dir / f"{log_file_prefix}.log",
                maxBytes=log_max_size_mb * 1024 * 1024,
                backupCount=log_backup_count,
                encoding="utf-8",
            ),
            logging.DEBUG, formatter, component_filter,
        )
        _attach(
            root_logger,
            ErrorOnlyHandler(
                log_dir / "error.log",
                when="midnight",
                interval=1,
                backupCount=log_backup_count,
                encoding="utf-8",
            ),
            logging.ERROR, formatter, component_filter,
        )

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return root_logger


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
