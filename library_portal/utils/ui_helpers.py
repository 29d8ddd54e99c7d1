import json
import os
from datetime import date
from typing import Any, Dict, Optional

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from library_portal.models import AssembledRecord
from library_portal.repair import RepairSession
from library_portal.views import Page, loan_duration_days, status_label

# Environment variable to control CLI output mode
# Allowed values: 'plain' (default), 'json', 'rich'
OUTPUT_MODE_ENV = "LIBRARY_PORTAL_OUTPUT"

STAT_LABELS = {
    "total_users": "用户总数",
    "admin_users": "管理员",
    "regular_users": "普通用户",
    "total_books": "图书总数",
    "total_authors": "作者总数",
    "total_categories": "分类总数",
    "active_loans": "借阅中",
    "completed_loans": "已归还",
    "overdue_loans": "已逾期",
}

_console = Console()


def set_output_mode(mode: str) -> None:
    mode = (mode or "").lower().strip()
    if mode in {"plain", "json", "rich"}:
        os.environ[OUTPUT_MODE_ENV] = mode


def get_output_mode() -> str:
    return os.environ.get(OUTPUT_MODE_ENV, "plain").lower()


def print_records_result(page: Page[AssembledRecord], today: Optional[date] = None) -> None:
    """Print one page of borrow records in the current output mode.

    - plain: one line per record plus a page footer
    - json: the page as a JSON object
    - rich: a table with the status badge
    """
    mode = get_output_mode()

    if mode == "json":
        payload = page.to_dict(
            lambda r: dict(r.to_dict(), status=status_label(r, today), duration_days=loan_duration_days(r, today))
        )
        print(json.dumps(payload, ensure_ascii=False))
        return

    if not page.items:
        print("没有找到借阅记录")
        return

    if mode == "rich":
        table = Table(title="借阅记录", show_lines=True, header_style="bold cyan")
        table.add_column("ID", style="magenta", no_wrap=True)
        table.add_column("图书")
        table.add_column("作者")
        table.add_column("借阅人")
        table.add_column("借阅日期", no_wrap=True)
        table.add_column("状态")
        for r in page.items:
            table.add_row(
                r.id, r.book.title, r.book.author.name, r.user.username, r.borrow_date.isoformat(), status_label(r, today)
            )
        _console.print(table)
    else:
        for r in page.items:
            print(f"{r.id} - {r.book.title} ({r.book.author.name}) - {r.user.username} - {status_label(r, today)}")
    print(f"第 {page.page}/{page.total_pages} 页，共 {page.total_items} 条")


def print_repair_result(session: RepairSession) -> None:
    """Print the repair summary and every record that still needs attention."""
    mode = get_output_mode()
    summary = session.summary()

    if mode == "json":
        print(json.dumps(session.to_dict(), ensure_ascii=False))
        return

    problems = [item for item in session.problem_records if item.id not in session.fixed]
    if mode == "rich":
        _console.print(
            Panel.fit(
                f"[bold]记录总数:[/] {summary['total']}\n[bold]需要修复:[/] {summary['problems']}",
                title="数据修复",
                border_style="blue",
            )
        )
        if problems:
            table = Table(show_lines=True, header_style="bold cyan")
            table.add_column("ID", style="magenta", no_wrap=True)
            table.add_column("图书")
            table.add_column("原始用户ID")
            table.add_column("用户")
            table.add_column("建议替换")
            for item in problems:
                table.add_row(
                    item.id,
                    item.book_title,
                    repr(item.original_user_id),
                    item.username if item.user_found else "[red]未找到[/]",
                    item.default_replacement or "-",
                )
            _console.print(table)
        return

    print(f"记录总数: {summary['total']}")
    print(f"需要修复: {summary['problems']}")
    for item in problems:
        found = item.username if item.user_found else "未找到"
        suggestion = item.default_replacement or "-"
        print(f"{item.id} - {item.book_title} - {item.original_user_id!r} - {found} - 建议: {suggestion}")


def print_stats_result(stats: Dict[str, Any]) -> None:
    mode = get_output_mode()

    if not stats:
        print("没有统计数据")
        return

    if mode == "json":
        print(json.dumps(stats, ensure_ascii=False))
    elif mode == "rich":
        content = "\n".join(f"[bold]{STAT_LABELS.get(key, key)}:[/] {value}" for key, value in stats.items())
        _console.print(Panel.fit(content, title="统计", border_style="blue"))
    else:
        for key, value in stats.items():
            print(f"{STAT_LABELS.get(key, key)}: {value}")
