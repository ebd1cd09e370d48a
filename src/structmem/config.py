"""
structmem 配置模块
"""

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """应用配置"""

    # 路径配置
    project_root: Path = Field(
        default_factory=lambda: Path.cwd(), description="项目根目录 (默认为当前工作目录)"
    )
    database_path: str = Field(default="data/memory.db", description="数据库路径")

    # === 日志配置 ===
    log_level: str = Field(default="INFO", description="日志级别")
    log_dir: str = Field(default="logs", description="日志目录")
    log_file_prefix: str = Field(default="structmem", description="日志文件前缀")
    log_max_size_mb: int = Field(default=10, description="单个日志文件最大大小（MB）")
    log_backup_count: int = Field(default=30, description="保留的日志文件数量")
    log_format: str = Field(
        default="%(asctime)s %(levelname)-7s [%(component)s] %(message)s",
        description="日志格式，可使用 %(component)s（[MemoryStore] 前缀中的组件名）",
    )
    log_to_console: bool = Field(default=True, description="是否输出到控制台")
    log_to_file: bool = Field(default=False, description="是否输出到文件")

    # === LLM（OpenAI 兼容端点）===
    # 留空 llm_api_key 时所有依赖 LLM 的路径降级为规则/空操作
    llm_base_url: str = Field(
        default="https://api.openai.com/v1", description="OpenAI 兼容 API 地址"
    )
    llm_api_key: str = Field(default="", description="API Key（留空=不使用 LLM）")
    llm_model: str = Field(default="gpt-4o-mini", description="记忆提取/总结使用的模型")
    llm_timeout: float = Field(default=60.0, description="LLM 请求超时（秒）")

    # === 上下文构建 ===
    context_max_items: int = Field(default=15, description="构建记忆上下文时的最大条数")

    # === 总结 ===
    summarize_threshold: int = Field(
        default=20, description="会话结束时，用户活跃记忆超过该数量才触发总结"
    )
    category_summarize_min_items: int = Field(
        default=5, description="分类活跃记忆超过该数量才进行 LLM 压缩"
    )

    # === 清理 ===
    cleanup_min_confidence: float = Field(default=0.3, description="低于该可信度的记忆被清理")
    cleanup_max_age_days: int = Field(default=90, description="超过该天数且可信度不高的记忆被清理")
    cleanup_min_content_length: int = Field(default=5, description="内容短于该长度的记忆被清理")

    # === 衰减 ===
    decay_rate: float = Field(default=0.95, description="每次衰减的乘数")
    decay_min_confidence: float = Field(default=0.3, description="衰减下限")
    decay_days_threshold: int = Field(default=30, description="超过该天数未更新才衰减")

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "env_prefix": "STRUCTMEM_",
        "extra": "ignore",
        # 忽略空字符串环境变量，避免 "" 被解析成 int/float 导致启动失败
        "env_ignore_empty": True,
    }

    @property
    def db_full_path(self) -> Path:
        """数据库完整路径"""
        return self.project_root / self.database_path

    @property
    def log_dir_path(self) -> Path:
        """日志目录完整路径"""
        return self.project_root / self.log_dir

    @property
    def llm_enabled(self) -> bool:
        return bool(self.llm_api_key)


# 全局配置实例
settings = Settings()
