"""
momentsync CLI
Commands: log, list, view, favorite, delete, restore, sync, retry, status, purge, server
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table
from rich.panel import Panel
from rich import box

from momentsync.config.logs import configure_logging
from momentsync.config.settings import settings
from momentsync.container import Services, build_services
from momentsync.models.moment import Moment
from momentsync.sync.errors import RemoteError
from momentsync.sync.state import Enriched, EnrichmentFailed

app = typer.Typer(
    name="momentsync",
    help="momentsync — log small wins, sync them when you can",
    add_completion=False,
)
console = Console()


def _build_services() -> Services:
    configure_logging(settings, console=False)
    return build_services(settings)


@asynccontextmanager
async def _open():
    services = _build_services()
    try:
        yield services
    finally:
        await services.aclose()


def _resolve(services: Services, prefix: str) -> Moment:
    """Support prefix search on client ids."""
    matches = services.repository.match_prefix(prefix)
    if not matches:
        console.print(f"[red]Moment not found:[/] {prefix}")
        raise typer.Exit(1)
    if len(matches) > 1:
        console.print(f"[red]Ambiguous id:[/] {prefix} matches {len(matches)} moments")
        raise typer.Exit(1)
    return matches[0]


def _sync_badge(services: Services, moment: Moment) -> str:
    state = services.sync_engine.sync_state(moment).value
    style = {"synced": "green", "unsynced": "yellow", "syncing": "cyan", "syncFailed": "red"}.get(
        state, "white"
    )
    return f"[{style}]{state}[/]"


# ── log ───────────────────────────────────────────────────────────────────────

@app.command()
def log(
    text: str = typer.Argument(..., help="What did you do?"),
    time_ago: Optional[int] = typer.Option(None, "--ago", "-a", help="Seconds ago it happened"),
    tz: str = typer.Option("UTC", "--tz", help="IANA timezone of the moment"),
    offline: bool = typer.Option(False, "--offline", help="Save locally without syncing"),
):
    """Log a moment."""

    async def _run():
        async with _open() as services:
            try:
                moment = await services.moments.create_moment(
                    text, timezone=tz, time_ago_seconds=time_ago, sync=False,
                )
            except ValueError as e:
                console.print(f"[red]Error:[/] {e}")
                raise typer.Exit(1)

            console.print(Panel(
                f"[bold]{moment.offline_praise}[/]\n"
                f"ID : [cyan]{moment.client_id}[/]",
                title="Saved",
                border_style="green",
            ))
            if offline:
                return

            with console.status("Syncing..."):
                state = await services.moments.wait_for_enrichment(moment.client_id)
            if isinstance(state, Enriched):
                body = f"[bold]{state.praise}[/]"
                if state.action:
                    body += f"\n[dim]{state.action}[/]"
                if state.tags:
                    body += "\n" + " ".join(f"[magenta]#{t}[/]" for t in state.tags)
                console.print(Panel(body, title="Praise", border_style="cyan"))
            elif isinstance(state, EnrichmentFailed):
                console.print(f"[red]Sync failed:[/] {state.reason}")
            else:
                console.print("[yellow]Saved offline; praise will arrive on the next sync.[/]")

    asyncio.run(_run())


# ── list ──────────────────────────────────────────────────────────────────────

@app.command("list")
def list_moments(
    limit: int = typer.Option(20, "--limit", "-n"),
    favorites: bool = typer.Option(False, "--favorites", "-f", help="Only favorites"),
    tag: Optional[str] = typer.Option(None, "--tag", "-t", help="Only moments with this tag"),
    archived: bool = typer.Option(False, "--archived", help="Include archived moments"),
):
    """List recent moments."""

    async def _run():
        async with _open() as services:
            moments = services.repository.list_moments(
                include_archived=archived, favorites_only=favorites, tag=tag, limit=limit,
            )
            if not moments:
                console.print("[dim]No moments logged yet.[/]")
                return

            table = Table(title="Moments", box=box.ROUNDED)
            table.add_column("ID", style="cyan", no_wrap=True, max_width=8)
            table.add_column("When", no_wrap=True)
            table.add_column("Moment")
            table.add_column("Praise")
            table.add_column("★", justify="center")
            table.add_column("Sync", justify="center")

            for m in moments:
                text = m.text if not m.is_archived else f"[dim strike]{m.text}[/]"
                table.add_row(
                    m.client_id[:8],
                    m.happened_at.strftime("%Y-%m-%d %H:%M"),
                    text,
                    m.display_praise,
                    "★" if m.is_favorite else "",
                    _sync_badge(services, m),
                )
            console.print(table)

    asyncio.run(_run())


# ── view ──────────────────────────────────────────────────────────────────────

@app.command()
def view(client_id: str = typer.Argument(..., help="Moment ID (or prefix)")):
    """Show one moment."""

    async def _run():
        async with _open() as services:
            m = _resolve(services, client_id)
            tags = " ".join(f"[magenta]#{t}[/]" for t in m.tags or []) or "[dim]none[/]"
            error = (
                f"\nError    : [red]{m.last_sync_error}[/]\nAttempts : {m.sync_attempts}"
                if m.last_sync_error else ""
            )
            console.print(Panel(
                f"[bold]{m.text}[/]\n\n"
                f"{m.display_praise}\n"
                f"{'[dim]' + m.action + '[/]' if m.action else ''}\n\n"
                f"ID       : [cyan]{m.client_id}[/]\n"
                f"Server ID: [cyan]{m.server_id or '—'}[/]\n"
                f"Happened : {m.happened_at.strftime('%Y-%m-%d %H:%M')} ({m.timezone})\n"
                f"Tags     : {tags}\n"
                f"Favorite : {'yes' if m.is_favorite else 'no'}\n"
                f"Archived : {'yes' if m.is_archived else 'no'}\n"
                f"Sync     : {_sync_badge(services, m)}"
                f"{error}",
                title="Moment",
                border_style="cyan",
            ))

    asyncio.run(_run())


# ── favorite / delete / restore ───────────────────────────────────────────────

@app.command()
def favorite(client_id: str = typer.Argument(..., help="Moment ID (or prefix)")):
    """Toggle favorite on a moment."""

    async def _run():
        async with _open() as services:
            m = _resolve(services, client_id)
            m = services.moments.toggle_favorite(m.client_id)
            await services.moments.wait_idle()
            label = "[yellow]★ favorited[/]" if m.is_favorite else "unfavorited"
            console.print(f"{label} [cyan]{m.client_id[:8]}[/]")

    asyncio.run(_run())


@app.command()
def delete(client_id: str = typer.Argument(..., help="Moment ID (or prefix)")):
    """Archive a moment (undo with `restore`)."""

    async def _run():
        async with _open() as services:
            m = _resolve(services, client_id)
            services.moments.delete_moment(m.client_id)
            await services.moments.wait_idle()
            console.print(f"[yellow]Archived[/] [cyan]{m.client_id[:8]}[/]")

    asyncio.run(_run())


@app.command()
def restore(client_id: str = typer.Argument(..., help="Moment ID (or prefix)")):
    """Restore an archived moment."""

    async def _run():
        async with _open() as services:
            m = _resolve(services, client_id)
            services.moments.restore_moment(m.client_id)
            await services.moments.wait_idle()
            console.print(f"[green]Restored[/] [cyan]{m.client_id[:8]}[/]")

    asyncio.run(_run())


# ── sync / retry ──────────────────────────────────────────────────────────────

@app.command()
def sync(
    pull: bool = typer.Option(False, "--pull", help="Also reload the newest server page"),
):
    """Push pending changes to the server."""

    async def _run():
        async with _open() as services:
            with console.status("Syncing..."):
                stats = await services.moments.sync_now()
            console.print(Panel(
                f"Pending   : [cyan]{stats.moments}[/]\n"
                f"Uploaded  : [green]{stats.uploaded}[/]\n"
                f"Enriched  : [green]{stats.enriched}[/]\n"
                f"Updated   : [green]{stats.updated}[/]\n"
                f"Failed    : [red]{stats.failed}[/]",
                title="Sync",
                border_style="blue",
            ))
            for cid, error in stats.errors.items():
                console.print(f"  [red]{cid[:8]}[/] {error}")
            if pull:
                try:
                    page = await services.pagination.load_first(
                        limit=services.settings.refresh_page_size,
                    )
                except RemoteError as e:
                    console.print(f"[red]Pull failed:[/] {e.describe()}")
                    raise typer.Exit(1)
                console.print(f"Pulled [cyan]{len(page.items)}[/] moment(s)")
                if page.limit_reached:
                    console.print("[yellow]Older moments are outside your plan's window.[/]")

    asyncio.run(_run())


@app.command()
def retry(client_id: str = typer.Argument(..., help="Moment ID (or prefix)")):
    """Retry a moment whose sync failed."""

    async def _run():
        async with _open() as services:
            m = _resolve(services, client_id)
            outcomes = await services.moments.retry_sync(m.client_id)
            if not outcomes:
                console.print("[dim]Nothing to sync.[/]")
            for o in outcomes:
                badge = "[green]ok[/]" if o.ok else f"[red]failed[/] {o.error}"
                console.print(f"{o.operation:<8} {badge}")
            if any(not o.ok for o in outcomes):
                raise typer.Exit(1)

    asyncio.run(_run())


# ── status ────────────────────────────────────────────────────────────────────

@app.command()
def status():
    """Show local store and sync stats."""

    async def _run():
        async with _open() as services:
            repo = services.repository
            total = repo.count()
            archived = repo.count(include_archived=True) - total
            pending = repo.fetch_pending_sync(include_terminal=True)
            failed = [m for m in pending if m.last_sync_error]
            online = await services.cloud.health()

            console.print(Panel(
                f"Moments total     : [cyan]{total}[/]\n"
                f"  Archived        : [dim]{archived}[/]\n"
                f"  Pending sync    : [yellow]{len(pending)}[/]\n"
                f"  Sync failed     : [red]{len(failed)}[/]\n"
                f"Server            : {'[green]reachable[/]' if online else '[red]unreachable[/]'}",
                title="momentsync Status",
                border_style="blue",
            ))

    asyncio.run(_run())


# ── purge ─────────────────────────────────────────────────────────────────────

@app.command()
def purge(
    days: Optional[int] = typer.Option(None, "--days", help="Retention in days"),
):
    """Delete archived moments older than the retention window."""

    async def _run():
        async with _open() as services:
            purged = services.moments.purge(days)
            console.print(f"Purged [cyan]{purged}[/] archived moment(s)")

    asyncio.run(_run())


# ── server ────────────────────────────────────────────────────────────────────

@app.command()
def server(
    host: str = typer.Option(settings.api_host, "--host"),
    port: int = typer.Option(settings.api_port, "--port"),
    reload: bool = typer.Option(False, "--reload"),
):
    """Start the momentsync API server."""
    import uvicorn
    console.print(f"[green]Starting momentsync API server[/] → http://{host}:{port}")
    uvicorn.run("momentsync.main:app", host=host, port=port, reload=reload)


if __name__ == "__main__":
    app()
