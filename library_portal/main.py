import asyncio
import subprocess
import sys
from typing import Optional

import typer
from rich.console import Console

from library_portal.config import configure_logging, settings
from library_portal.database import NotFoundError
from library_portal.library import Library
from library_portal.repair import RepairError, load_repair_session, repair_record
from library_portal.services.http_client import BackendClient, BackendError
from library_portal.utils.ui_helpers import print_records_result, print_repair_result, print_stats_result, set_output_mode
from library_portal.utils.validators import DateValidator
from library_portal.views import STATUS_ALL

console = Console()

app = typer.Typer(help="图书管理系统运维工具")


def make_client() -> BackendClient:
    """Backend client for one command run."""
    return BackendClient()


def _fail(message: str) -> None:
    console.print(f"[bold red]错误:[/] {message}")
    raise typer.Exit(code=1)


def _run(coro):
    try:
        return asyncio.run(coro)
    except BackendError as e:
        _fail(f"数据服务请求失败: {e.message}")


@app.callback()
def _global_options(
    output: Optional[str] = typer.Option(
        None,
        "--output",
        "-o",
        help="Output format: plain | json | rich (default: plain)",
    ),
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Overrides LOG_LEVEL"),
):
    """Global options (output mode, logging)."""
    if output:
        set_output_mode(output)
    configure_logging(log_level or "WARNING")


@app.command("records")
def cli_records(
    query: str = typer.Option("", "--search", "-s", help="Matches book title, author name or username"),
    status: str = typer.Option(STATUS_ALL, "--status", help="all | active | returned | overdue"),
    page: int = typer.Option(1, "--page", "-p", min=1),
    per_page: int = typer.Option(settings.default_page_size, "--per-page", "-n", min=1, max=settings.max_page_size),
):
    """List borrow records with search, status filter and paging."""

    async def run():
        async with make_client() as client:
            return await Library(client).list_borrow_records(query, status, page, per_page)

    try:
        result = _run(run())
    except ValueError as e:
        _fail(str(e))
    print_records_result(result)


@app.command("repair")
def cli_repair():
    """List borrow records whose user id does not match a profile."""

    async def run():
        async with make_client() as client:
            return await load_repair_session(client)

    print_repair_result(_run(run()))


@app.command("fix")
def cli_fix(
    record_id: str = typer.Argument(..., help="Borrow record id"),
    user: Optional[str] = typer.Option(None, "--user", "-u", help="Replacement profile id"),
):
    """Point one borrow record at a valid profile."""

    async def run():
        async with make_client() as client:
            session = await load_repair_session(client)
            return await repair_record(client, session, record_id, user)

    try:
        changed = _run(run())
    except RepairError as e:
        _fail(str(e))
    if changed:
        print(f"借阅记录 {record_id} 已修复")
    else:
        print(f"借阅记录 {record_id} 无需修复")


@app.command("stats")
def cli_stats():
    """Show library statistics."""

    async def run():
        async with make_client() as client:
            return await Library(client).get_statistics()

    print_stats_result(_run(run()))


@app.command("return")
def cli_return(
    record_id: str = typer.Argument(..., help="Borrow record id"),
    returned_on: Optional[str] = typer.Option(None, "--date", help="Return date YYYY-MM-DD, defaults to today"),
):
    """Mark a loan returned."""

    async def run(return_date):
        async with make_client() as client:
            return await Library(client).return_book(record_id, return_date)

    try:
        return_date = DateValidator.parse(returned_on) if returned_on else None
        record = _run(run(return_date))
    except (NotFoundError, ValueError) as e:
        _fail(str(e))
    print(f"借阅记录 {record_id} 已归还 ({record.return_date.isoformat()})")


@app.command("serve")
def cli_serve(
    host: Optional[str] = typer.Option(None, "--host"),
    port: Optional[int] = typer.Option(None, "--port"),
    reload: bool = typer.Option(False, "--reload", help="Restart on code changes"),
):
    """Start the HTTP API with uvicorn."""
    host = host or settings.api_host
    port = int(port or settings.api_port)
    print(f"Starting API on http://{host}:{port}/")
    args = [
        sys.executable,
        "-m", "uvicorn",
        "library_portal.api:app",
        "--host", host,
        "--port", str(port),
    ]
    if reload:
        args.append("--reload")
    try:
        subprocess.run(args)
    except FileNotFoundError:
        _fail("uvicorn could not be started. Make sure it is installed.")


if __name__ == "__main__":
    app()
