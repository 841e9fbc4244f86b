import json

import click
from flask.cli import with_appcontext

from pvesync.errors import SyncError
from pvesync.extensions import db, sync_engine
from pvesync.models import INVENTORY_TYPES
from pvesync.sync.types import SyncScope


@click.command('init-db')
@click.option('--drop', is_flag=True, help='Drop existing tables first (destroys history).')
@with_appcontext
def init_db_command(drop):
    """Creates the State Store tables."""
    if drop:
        db.drop_all()
        click.echo('Tables dropped.')
    db.create_all()
    click.echo('Database initialised.')


@click.command('sync')
@click.option('--node', 'nodes', multiple=True, help='Limit the run to these nodes.')
@click.option('--type', 'resource_types', multiple=True, type=click.Choice(INVENTORY_TYPES),
              help='Limit the run to these resource types.')
@click.option('--declared', type=click.File('r'), help='JSON file with the declared target.')
@click.option('--wait', is_flag=True, help='Block until every dispatched operation finishes.')
@with_appcontext
def sync_command(nodes, resource_types, declared, wait):
    """Runs one synchronization pass against the cluster."""
    scope = SyncScope(nodes=nodes or None, resource_types=resource_types or None)
    declared_items = json.load(declared) if declared else None

    try:
        result = sync_engine.run_sync(scope=scope, declared=declared_items, wait=wait)
    except (SyncError, ValueError) as e:
        raise click.ClickException(str(e))
    finally:
        # Without --wait, pending operations stay in flight for the next run
        sync_engine.shutdown()

    click.echo(f"Run {result.run_id} ({scope.key}) in {result.elapsed:.2f}s")
    for resource_type, counts in result.by_type.items():
        click.echo(f"  {resource_type:10s} created={counts.created} updated={counts.updated} "
                   f"absent={counts.absent} unchanged={counts.unchanged} failed={counts.failed}")
    for failure in result.failures:
        click.echo(f"  FAILED {failure.resource_type}:{failure.resource_id} "
                   f"[{failure.error_type}] {failure.error}", err=True)
    for handle in result.completed:
        click.echo(f"  {handle.status} {handle.kind} {handle.resource_type}:{handle.resource_id} {handle.upid}")
    for handle in result.pending:
        click.echo(f"  pending {handle.kind} {handle.resource_type}:{handle.resource_id} {handle.upid}")

    if not result.success:
        raise SystemExit(1)


@click.command('sync-status')
@with_appcontext
def sync_status_command():
    """Shows the last run and in-flight operations."""
    stats = sync_engine.get_sync_stats()
    last = stats['last_run']
    if last is None:
        click.echo('No sync run recorded yet.')
    else:
        click.echo(f"Last run {last['id']}: {last['status']} at {last['started_at']} "
                   f"({last['elapsed_seconds']}s)")
    for resource_type, count in stats['resources'].items():
        click.echo(f"  {resource_type:10s} {count}")
    for op in sync_engine.get_in_flight_operations():
        click.echo(f"  in flight: {op.kind} {op.resource_type}:{op.resource_id} [{op.status}] {op.upid}")
