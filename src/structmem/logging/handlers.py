"""
自定义日志处理器与过滤器

- ComponentFilter: 从 "[MemoryStore] ..." 前缀提取组件名
- ErrorOnlyHandler: 只记录 ERROR/CRITICAL 级别日志
- ColoredConsoleHandler: 彩色控制台输出
"""

import logging
import re
import sys
from logging.handlers import TimedRotatingFileHandler
from typing import TextIO

_COMPONENT_PREFIX_RE = re.compile(r"^\[([A-Za-z][\w.-]*)\]\s*")


class ComponentFilter(logging.Filter):
    """
    给日志记录补充 component 属性

    消息以 "[MemoryStore] ..." 开头时取出方括号内的组件名并从消息中去掉前缀，
    否则使用 logger 名称的最后一段（structmem.memory.storage -> storage）。
    同一条记录只处理一次，多个处理器共享结果。
    """

    def filter(self, record: logging.LogRecord) -> bool:
        if hasattr(record, "component"):
            return True
        match = _COMPONENT_PREFIX_RE.match(record.msg) if isinstance(record.msg, str) else None
        if match:
            record.component = match.group(1)
            record.msg = record.msg[match.end():]
        else:
            record.component = record.name.rsplit(".", 1)[-1]
        return True


class ErrorOnlyHandler(TimedRotatingFileHandler):
    """
    只记录 ERROR 和 CRITICAL 级别日志的处理器

    继承 TimedRotatingFileHandler，按天轮转
    """

    def emit(self, record: logging.LogRecord) -> None:
        if record.levelno >= logging.ERROR:
            super().emit(record)


class ColoredConsoleHandler(logging.StreamHandler):
    """
    彩色控制台日志处理器

    - DEBUG: 灰色
    - INFO: 默认
    - WARNING: 黄色
    - ERROR: 红色
    - CRITICAL: 红色加粗
    """

    COLORS = {
        logging.DEBUG: "\033[90m",
        logging.INFO: "\033[0m",
        logging.WARNING: "\033[93m",
        logging.ERROR: "\033[91m",
        logging.CRITICAL: "\033[91;1m",
    }
    RESET = "\033[0m"

    def __init__(self, stream: TextIO | None = None):
        super().__init__(stream or sys.stdout)
        self._supports_color = hasattr(self.stream, "isatty") and self.stream.isatty()

    def emit(self, record: logging.LogRecord) -> None:
        """输出日志记录，中文内容在非 UTF-8 终端下不抛异常"""
        try:
            super().emit(record)
        except UnicodeEncodeError:
            msg = self.format(record)
            safe_msg = msg.encode("utf-8", errors="replace").decode("utf-8", errors="replace")
            self.stream.write(safe_msg + self.terminator)
            self.stream.flush()

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        if self._supports_color:
            color = self.COLORS.get(record.levelno, self.RESET)
            return f"{color}{message}{self.RESET}"
        return message
