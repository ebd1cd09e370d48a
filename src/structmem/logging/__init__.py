"""
structmem 日志系统

功能:
- 主日志文件（按大小轮转）
- 分离 error.log（只记录 ERROR/CRITICAL，按天轮转）
- 控制台彩色输出
- [Component] 消息前缀提取为 %(component)s
"""

from .config import get_logger, setup_logging
from .handlers import ColoredConsoleHandler, ComponentFilter, ErrorOnlyHandler

__all__ = [
    "setup_logging",
    "get_logger",
    "ColoredConsoleHandler",
    "ComponentFilter",
    "ErrorOnlyHandler",
]
