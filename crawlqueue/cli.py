"""CLI interface for crawlqueue."""

import functools
import importlib
import json
import multiprocessing
import sys
from datetime import datetime
from typing import Optional

import click

from .exceptions import QueueError
from .logger import setup_logger
from .models import Config, Item, ItemState
from .queue import QueueManager
from .storage import create_store
from .worker import Processor, Worker

STATE_CHOICES = [state.label for state in ItemState]


def get_manager(config: Config) -> QueueManager:
    """Build a queue manager over the configured store."""
    return QueueManager(create_store(config))


def load_processor(path: str) -> Processor:
    """Resolve a ``module:callable`` path to a processor function."""
    module_name, _, attr = path.partition(":")
    if not module_name or not attr:
        raise click.BadParameter("expected 'module:callable'", param_hint="--processor")
    try:
        processor = getattr(importlib.import_module(module_name), attr)
    except (ImportError, AttributeError) as e:
        raise click.BadParameter(f"cannot load {path}: {e}", param_hint="--processor") from e
    if not callable(processor):
        raise click.BadParameter(f"{path} is not callable", param_hint="--processor")
    return processor


def _format_time(timestamp: int) -> str:
    return datetime.fromtimestamp(timestamp).strftime("%Y-%m-%d %H:%M:%S")


def reports_queue_errors(f):
    """Turn queue and store failures into a one-line error and exit status 1."""

    @functools.wraps(f)
    def wrapper(*args, **kwargs):
        try:
            return f(*args, **kwargs)
        except QueueError as e:
            click.echo(f"✗ Error: {e}", err=True)
            sys.exit(1)

    return wrapper


def _print_items(items) -> None:
    click.echo(f"\n{'Configuration':<16} {'Identifier':<32} {'State':<12} {'Changed':<20} {'Message'}")
    click.echo("-" * 100)
    for item in items:
        click.echo(
            f"{item.configuration[:16]:<16} {item.identifier[:32]:<32} {item.state.label:<12} "
            f"{_format_time(item.timestamp):<20} {item.message[:30]}"
        )
    click.echo()


@click.group()
@click.pass_context
def cli(ctx: click.Context):
    """CrawlQueue - crawl work queue"""
    config = Config()
    setup_logger(config.log_level, worker_id="cli")
    ctx.obj = config


@cli.command()
@click.argument("configuration")
@click.argument("identifier")
@click.option("--data", "data_json", default="{}", help="JSON object payload for the item")
@click.pass_obj
def enqueue(config: Config, configuration: str, identifier: str, data_json: str):
    """Enqueue an item, or reset an existing one to pending.

    Example:
        crawlqueue enqueue site1 /about --data '{"depth": 1}'
    """
    try:
        data = json.loads(data_json)
        if not isinstance(data, dict):
            raise ValueError("payload must be a JSON object")
        item = Item(configuration=configuration, identifier=identifier, data=data)
        if get_manager(config).enqueue(item):
            click.echo(f"✓ Item {configuration}/{identifier} enqueued")
        else:
            click.echo(f"✗ Item {configuration}/{identifier} was not stored", err=True)
            sys.exit(1)
    except ValueError as e:
        click.echo(f"✗ Invalid item: {e}", err=True)
        sys.exit(1)
    except QueueError as e:
        click.echo(f"✗ Error: {e}", err=True)
        sys.exit(1)


@cli.command(name="list")
@click.option("--state", type=click.Choice(STATE_CHOICES), help="Filter by state")
@click.option("--limit", default=10, help="Maximum items to display")
@click.pass_obj
@reports_queue_errors
def list_items(config: Config, state: Optional[str], limit: int):
    """List items, oldest first.

    Example:
        crawlqueue list --state pending
        crawlqueue list --state error --limit 20
    """
    manager = get_manager(config)
    if state is None:
        items = manager.list_all()
    else:
        items = {
            ItemState.PENDING: lambda: manager.list_pending(limit),
            ItemState.IN_PROGRESS: manager.list_in_progress,
            ItemState.SUCCESS: manager.list_successful,
            ItemState.ERROR: manager.list_failed,
        }[ItemState.from_label(state)]()
    items = items[:limit]

    if not items:
        click.echo("No items found")
        return
    _print_items(items)


@cli.command()
@click.pass_obj
@reports_queue_errors
def status(config: Config):
    """Show queue statistics.

    Example:
        crawlqueue status
    """
    manager = get_manager(config)
    stats = manager.count_by_state()

    click.echo("\n" + "=" * 50)
    click.echo("CrawlQueue Status")
    click.echo("=" * 50)
    click.echo(f"Total Items:    {stats['total']}")
    click.echo(f"  Pending:      {stats['pending']}")
    click.echo(f"  In progress:  {stats['in_progress']}")
    click.echo(f"  Success:      {stats['success']}")
    click.echo(f"  Error:        {stats['error']}")
    click.echo(f"Finished:       {manager.count_finished()}")
    click.echo("=" * 50 + "\n")


@cli.command()
@click.argument("token")
@click.pass_obj
@reports_queue_errors
def inspect(config: Config, token: str):
    """Show in-progress items held by a claim token.

    Example:
        crawlqueue inspect 1-9f2c...
    """
    items = get_manager(config).find_in_progress_by_token(token)
    if not items:
        click.echo(f"No in-progress items for token {token}")
        return
    _print_items(items)


@cli.command()
@click.option("--older-than", type=int, required=True, help="Age in seconds of the last state change")
@click.option("--dry-run", is_flag=True, help="Only show the items that would be re-enqueued")
@click.pass_obj
@reports_queue_errors
def recover(config: Config, older_than: int, dry_run: bool):
    """Re-enqueue in-progress items whose worker seems to have died.

    Example:
        crawlqueue recover --older-than 3600
    """
    manager = get_manager(config)
    cutoff = int(manager.clock()) - older_than
    stale = [item for item in manager.list_in_progress() if item.timestamp <= cutoff]

    if not stale:
        click.echo("No stale items found")
        return

    recovered = 0
    for item in stale:
        if dry_run:
            click.echo(f"  would re-enqueue {item.configuration}/{item.identifier} (token {item.hash})")
            continue
        if manager.enqueue(item):
            recovered += 1
    if not dry_run:
        click.echo(f"✓ Re-enqueued {recovered} of {len(stale)} stale item(s)")


@cli.group()
def worker():
    """Manage worker processes"""
    pass


def _worker_process(config: Config, processor_path: str, worker_id: int):
    """Run a single worker process."""
    setup_logger(config.log_level, worker_id=str(worker_id))
    w = Worker(get_manager(config), load_processor(processor_path), worker_id, config.batch_size)
    w.run(config.poll_interval)


@worker.command()
@click.option("--processor", "processor_path", required=True, help="Processor as 'module:callable'")
@click.option("--count", default=1, help="Number of workers to start")
@click.pass_obj
def start(config: Config, processor_path: str, count: int):
    """Start one or more workers.

    Example:
        crawlqueue worker start --processor mycrawler.fetch:process --count 3
    """
    if count < 1:
        click.echo("✗ Count must be at least 1", err=True)
        sys.exit(1)
    # fail here rather than in every child
    load_processor(processor_path)

    click.echo(f"Starting {count} worker(s)...")

    processes = []
    try:
        for i in range(count):
            p = multiprocessing.Process(target=_worker_process, args=(config, processor_path, i + 1))
            p.start()
            processes.append(p)

        # Wait for all processes
        for p in processes:
            p.join()

    except KeyboardInterrupt:
        click.echo("\nShutting down workers...")
        for p in processes:
            if p.is_alive():
                p.terminate()
        for p in processes:
            p.join(timeout=5)
            if p.is_alive():
                p.kill()
        click.echo("Workers stopped")


@cli.group()
def config():
    """Inspect configuration"""
    pass


@config.command()
@click.pass_obj
def show(cfg: Config):
    """Show current configuration.

    Example:
        crawlqueue config show
    """
    click.echo("\nCurrent Configuration:")
    for key, value in cfg.model_dump().items():
        click.echo(f"  {key.replace('_', '-')}:  {value}")
    click.echo()


if __name__ == "__main__":
    cli()
