"""
structmem CLI 入口

使用 Typer 和 Rich 提供运维命令: 查看/搜索记忆、构建上下文、
总结、清理、衰减以及旧数据迁移。
"""

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any

import typer
from rich.console import Console
from rich.json import JSON
from rich.panel import Panel
from rich.table import Table

from .config import settings
from .errors import StructMemError
from .llm import OpenAICompatibleCompleter, TextCompleter
from .logging import setup_logging
from .memory import (
    MemoryExtractor,
    MemoryMigration,
    MemoryRecord,
    MemorySource,
    MemoryStore,
    MemorySummarizer,
    get_sub_type_label,
)

logger = logging.getLogger(__name__)

# Typer 应用
app = typer.Typer(
    name="structmem",
    help="structmem - 结构化用户记忆管理",
    add_completion=False,
)

# Rich 控制台
console = Console()


def _build_completer() -> TextCompleter | None:
    """配置了 API Key 才创建 LLM 适配器"""
    if not settings.llm_enabled:
        return None
    return OpenAICompatibleCompleter(
        base_url=settings.llm_base_url,
        api_key=settings.llm_api_key,
        model=settings.llm_model,
        timeout=settings.llm_timeout,
    )


class _Services:
    def __init__(self, store: MemoryStore, completer: TextCompleter | None):
        self.store = store
        self.completer = completer
        self.extractor = MemoryExtractor(store, completer)
        self.summarizer = MemorySummarizer(
            store,
            self.extractor,
            completer,
            category_summarize_min_items=settings.category_summarize_min_items,
            summarize_threshold=settings.summarize_threshold,
        )
        self.migration = MemoryMigration(store)


@asynccontextmanager
async def _open_services() -> AsyncIterator[_Services]:
    completer = _build_completer()
    store = MemoryStore(settings.db_full_path)
    await store.connect()
    try:
        yield _Services(store, completer)
    finally:
        if isinstance(completer, OpenAICompatibleCompleter):
            await completer.close()
        await store.close()


def _run(coro) -> Any:
    """运行一个异步操作，领域错误转为非零退出码"""
    try:
        return asyncio.run(coro)
    except StructMemError as e:
        logger.debug(f"[CLI] Command failed: {e}")
        console.print(f"[red]✗[/red] {e.message}")
        raise typer.Exit(1)


def _format_time(timestamp_ms: int | None) -> str:
    if not timestamp_ms:
        return "-"
    return datetime.fromtimestamp(timestamp_ms / 1000).strftime("%Y-%m-%d %H:%M")


def _print_json(data: Any, title: str, style: str = "blue") -> None:
    console.print(Panel(JSON.from_data(data, default=str), title=title, border_style=style))


def _memory_table(title: str, memories: list[MemoryRecord]) -> Table:
    table = Table(title=title)
    table.add_column("ID", style="dim", justify="right")
    table.add_column("分类", style="cyan")
    table.add_column("子类型")
    table.add_column("内容")
    table.add_column("可信度", justify="right")
    table.add_column("更新时间", style="dim")

    for m in memories:
        table.add_row(
            str(m.id),
            m.category,
            get_sub_type_label(m.sub_type) if m.sub_type else "-",
            m.content,
            f"{m.confidence:.2f}",
            _format_time(m.updated_at),
        )
    return table


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", help="输出 DEBUG 日志"),
):
    """
    structmem - 结构化用户记忆管理

    数据库位置、LLM 端点等通过环境变量 STRUCTMEM_* 或 .env 配置
    """
    setup_logging(
        log_dir=settings.log_dir_path,
        log_level="DEBUG" if verbose else settings.log_level,
        log_format=settings.log_format,
        log_file_prefix=settings.log_file_prefix,
        log_max_size_mb=settings.log_max_size_mb,
        log_backup_count=settings.log_backup_count,
        log_to_console=settings.log_to_console,
        log_to_file=settings.log_to_file,
    )


@app.command()
def version():
    """显示版本信息"""
    from . import __version__

    console.print(f"structmem v{__version__}")


@app.command()
def add(
    user_id: str = typer.Argument(..., help="用户 ID"),
    content: str = typer.Argument(..., help="记忆内容"),
    category: str = typer.Option("custom", "--category", "-c", help="分类"),
    sub_type: str | None = typer.Option(None, "--sub-type", "-s", help="子类型"),
    confidence: float = typer.Option(0.8, "--confidence", help="可信度 0~1"),
    group_id: str | None = typer.Option(None, "--group", "-g", help="群组 ID"),
):
    """手动添加一条记忆（相似记忆会被合并）"""

    async def _add():
        async with _open_services() as services:
            return await services.store.save_memory(MemoryRecord(
                user_id=user_id,
                group_id=group_id,
                category=category,
                sub_type=sub_type,
                content=content,
                confidence=confidence,
                source=MemorySource.MANUAL.value,
            ))

    memory = _run(_add())
    console.print(f"[green]✓[/green] 已保存记忆 #{memory.id}: {memory.content}")


@app.command()
def delete(
    memory_id: int = typer.Argument(..., help="记忆 ID"),
    hard: bool = typer.Option(False, "--hard", help="物理删除（默认软删除）"),
):
    """删除一条记忆"""

    async def _delete():
        async with _open_services() as services:
            return await services.store.delete_memory(memory_id, hard=hard)

    if _run(_delete()):
        console.print(f"[green]✓[/green] 已删除记忆 #{memory_id}")
    else:
        console.print(f"[yellow]记忆 #{memory_id} 不存在[/yellow]")
        raise typer.Exit(1)


@app.command()
def stats(
    user: str | None = typer.Option(None, "--user", "-u", help="只统计该用户"),
):
    """显示记忆统计"""

    async def _stats():
        async with _open_services() as services:
            return await services.store.get_stats(user)

    data = _run(_stats())

    table = Table(title=f"记忆统计 ({user})" if user else "记忆统计")
    table.add_column("分类", style="cyan")
    table.add_column("数量", justify="right")
    for category, count in sorted(data["by_category"].items()):
        table.add_row(category, str(count))
    table.add_row("[bold]合计[/bold]", f"[bold]{data['total']}[/bold]")
    console.print(table)

    if "users" in data:
        console.print(f"用户数: {data['users']}")


@app.command()
def users():
    """列出所有有记忆的用户"""

    async def _users():
        async with _open_services() as services:
            return await services.store.list_users()

    rows = _run(_users())
    if not rows:
        console.print("[yellow]暂无用户记忆[/yellow]")
        return

    table = Table(title="用户列表")
    table.add_column("用户", style="cyan")
    table.add_column("记忆数", justify="right")
    table.add_column("分类")
    table.add_column("最近更新", style="dim")
    for row in rows:
        table.add_row(
            row["user_id"],
            str(row["count"]),
            ", ".join(row["categories"]),
            _format_time(row["last_update"]),
        )
    console.print(table)


@app.command()
def tree(
    user_id: str = typer.Argument(..., help="用户 ID"),
    include_inactive: bool = typer.Option(False, "--all", help="包含已删除记忆"),
):
    """按分类显示用户记忆树"""

    async def _tree():
        async with _open_services() as services:
            return await services.store.get_memory_tree(
                user_id, include_inactive=include_inactive
            )

    data = _run(_tree())
    for category, node in data.items():
        if node["count"] == 0:
            continue
        console.print(_memory_table(f"{node['label']} ({category})", node["items"]))


@app.command()
def search(
    query: str = typer.Argument(..., help="关键词（至少 2 个字符）"),
    user: str | None = typer.Option(None, "--user", "-u", help="限定用户"),
    category: str | None = typer.Option(None, "--category", "-c", help="限定分类"),
    limit: int = typer.Option(20, "--limit", "-n", help="最多返回条数"),
):
    """搜索记忆内容"""

    async def _search():
        async with _open_services() as services:
            return await services.store.search_memories(
                query, user_id=user, category=category, limit=limit
            )

    results = _run(_search())
    if not results:
        console.print("[yellow]没有匹配的记忆[/yellow]")
        return
    console.print(_memory_table(f"搜索: {query}", results))


@app.command()
def context(
    user_id: str = typer.Argument(..., help="用户 ID"),
    max_items: int | None = typer.Option(None, "--max-items", help="最大条数"),
):
    """输出用于注入提示词的记忆上下文"""

    async def _context():
        async with _open_services() as services:
            return await services.store.build_memory_context(
                user_id, max_items=max_items or settings.context_max_items
            )

    text = _run(_context())
    if not text:
        console.print("[yellow]该用户暂无记忆[/yellow]")
        return
    console.print(Panel(text.strip(), title=f"记忆上下文: {user_id}", border_style="blue"))


@app.command()
def report(
    user_id: str = typer.Argument(..., help="用户 ID"),
):
    """生成用户记忆报告"""

    async def _report():
        async with _open_services() as services:
            return await services.summarizer.generate_report(user_id)

    _print_json(_run(_report()), title=f"记忆报告: {user_id}")


@app.command()
def summarize(
    user_id: str = typer.Argument(..., help="用户 ID"),
    no_llm: bool = typer.Option(False, "--no-llm", help="只做哈希去重"),
):
    """总结用户记忆（去重 + LLM 压缩）"""

    async def _summarize():
        async with _open_services() as services:
            if services.completer is None and not no_llm:
                console.print("[yellow]ℹ[/yellow] 未配置 LLM，只做哈希去重")
            return await services.summarizer.summarize_user_memories(
                user_id, use_llm=not no_llm
            )

    _print_json(_run(_summarize()), title=f"总结结果: {user_id}", style="green")


@app.command()
def cleanup(
    user_id: str | None = typer.Argument(None, help="用户 ID（省略则清理所有用户）"),
):
    """清理低质量记忆"""
    options = {
        "min_confidence": settings.cleanup_min_confidence,
        "max_age_days": settings.cleanup_max_age_days,
        "min_content_length": settings.cleanup_min_content_length,
    }

    async def _cleanup():
        async with _open_services() as services:
            if user_id:
                return await services.summarizer.cleanup_memories(user_id, **options)
            return await services.summarizer.global_cleanup(**options)

    result = _run(_cleanup())
    if user_id:
        console.print(f"[green]✓[/green] 用户 {user_id} 清理了 {result['removed_count']} 条记忆")
    else:
        console.print(
            f"[green]✓[/green] 共处理 {result['users_processed']} 个用户，"
            f"清理了 {result['total_removed']} 条记忆"
        )


@app.command()
def decay():
    """衰减长时间未更新记忆的可信度"""

    async def _decay():
        async with _open_services() as services:
            return await services.summarizer.decay_confidence(
                decay_rate=settings.decay_rate,
                min_confidence=settings.decay_min_confidence,
                days_threshold=settings.decay_days_threshold,
            )

    result = _run(_decay())
    console.print(f"[green]✓[/green] 衰减了 {result['affected']} 条记忆的可信度")


@app.command()
def migrate(
    dry_run: bool = typer.Option(False, "--dry-run", help="只预览分类结果，不写入"),
    clear_existing: bool = typer.Option(
        False, "--clear-existing", help="迁移前清空现有结构化记忆"
    ),
):
    """将旧 memories 表迁移为结构化记忆"""

    async def _migrate():
        async with _open_services() as services:
            return await services.migration.run(
                dry_run=dry_run, clear_existing=clear_existing
            )

    result = _run(_migrate())
    if not result["success"]:
        _print_json(result, title="[red]迁移失败[/red]", style="red")
        raise typer.Exit(1)
    _print_json(result, title="迁移预览" if dry_run else "迁移完成", style="green")


@app.command("migration-status")
def migration_status():
    """检查迁移状态"""

    async def _status():
        async with _open_services() as services:
            return await services.migration.check_status()

    data = _run(_status())

    table = Table(title="迁移状态")
    table.add_column("项目", style="cyan")
    table.add_column("值", justify="right")
    table.add_row("旧表记录", str(data["old_table_count"]))
    table.add_row("结构化记录", str(data["new_table_count"]))
    table.add_row("已迁移记录", str(data["migrated_count"]))
    table.add_row(
        "需要迁移",
        "[yellow]是[/yellow]" if data["needs_migration"] else "[green]否[/green]",
    )
    console.print(table)


if __name__ == "__main__":
    app()
