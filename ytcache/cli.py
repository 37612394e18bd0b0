"""Operator CLI for the ytcache disk cache and quota state."""

from datetime import datetime
from zoneinfo import ZoneInfo

import click
from rich.console import Console
from rich.table import Table

from ytcache.config import AppSettings, load_settings
from ytcache.repositories.cache_store import CacheStore
from ytcache.repositories.database import Database
from ytcache.repositories.quota_repository import QuotaRepository

console = Console()


def _open_cache(settings: AppSettings) -> CacheStore:
    if not settings.cache_persistence_enabled:
        raise click.ClickException(
            "Cache persistence is disabled (YTCACHE_CACHE_PERSISTENCE_ENABLED); nothing on disk."
        )
    return CacheStore(settings.cache_dir, persistence_enabled=True)


@click.group()
@click.version_option(version="0.1.0")
@click.pass_context
def main(ctx: click.Context):
    """ytcache - inspect the YouTube request cache and quota usage."""
    ctx.obj = load_settings()


@main.group()
def cache():
    """Disk cache maintenance."""
    pass


@cache.command("stats")
@click.option("--keys", "show_keys", is_flag=True, help="List every cached key.")
@click.pass_obj
def cache_stats(settings: AppSettings, show_keys: bool):
    """Show entry count and size of the disk cache."""
    stats = _open_cache(settings).get_stats()

    console.print(f"\n[bold cyan]Cache[/bold cyan] {settings.cache_dir}\n")
    console.print(f"  Entries: {stats.count}")
    console.print(f"  Size: {stats.size_formatted}")

    if show_keys and stats.keys:
        table = Table("Key")
        for key in sorted(stats.keys):
            table.add_row(key)
        console.print(table)
    console.print()


@cache.command("clear")
@click.confirmation_option(prompt="Delete every cached entry?")
@click.pass_obj
def cache_clear(settings: AppSettings):
    """Delete every cache entry."""
    _open_cache(settings).clear()
    console.print("[green]Cache cleared[/green]")


@cache.command("delete")
@click.argument("key")
@click.pass_obj
def cache_delete(settings: AppSettings, key: str):
    """Delete a single cache entry by its full key."""
    if _open_cache(settings).delete(key):
        console.print(f"[green]Deleted[/green] {key}")
        return
    console.print(f"[yellow]No cache entry for[/yellow] {key}")
    raise SystemExit(1)


@main.command()
@click.pass_obj
def usage(settings: AppSettings):
    """Show today's persisted quota usage by category."""
    if not settings.quota_persistence_enabled:
        raise click.ClickException(
            "Quota persistence is disabled (YTCACHE_QUOTA_PERSISTENCE_ENABLED)."
        )

    database = Database(settings.db_path)
    database.initialize()
    today = datetime.now(ZoneInfo(settings.quota_timezone)).date()
    persisted = QuotaRepository(database).load_day(today)

    limit = settings.youtube_daily_quota_limit
    used = persisted.units_used
    color = "green"
    if used >= limit:
        color = "red"
    elif used > limit * settings.youtube_quota_warning_percent:
        color = "yellow"

    console.print(f"\n[bold cyan]Quota[/bold cyan] {today.isoformat()} ({settings.quota_timezone})\n")
    console.print(f"  Used: [{color}]{used}[/{color}] / {limit}")
    console.print(f"  Calls: {persisted.calls}")

    if persisted.breakdown:
        table = Table("Category", "Units")
        for category, units in sorted(persisted.breakdown.items()):
            table.add_row(category, str(units))
        console.print(table)
    console.print()


if __name__ == "__main__":
    main()
