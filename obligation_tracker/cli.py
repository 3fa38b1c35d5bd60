# obligation_tracker/cli.py
import logging
import os
from contextlib import contextmanager

import click
from dotenv import load_dotenv

from obligation_tracker.config import load_config
from obligation_tracker.core.errors import ObligationError
from obligation_tracker.core.models import (
    AwaitingConfirmation,
    Classification,
    ConfirmationMode,
    Failed,
    Frequency,
    Materialized,
    NotDue,
    Skipped,
)
from obligation_tracker.outputs import get_output
from obligation_tracker.planned import load_planned_obligations
from obligation_tracker.scheduler import ObligationScheduler
from obligation_tracker.utils import as_day, month_bounds

_DATE = click.DateTime(formats=['%Y-%m-%d'])

today_option = click.option(
    '--today', 'today',
    default=None,
    type=_DATE,
    help='Evaluate as of this date (YYYY-MM-DD) instead of the current date.'
)


@contextmanager
def _reporting_errors():
    try:
        yield
    except (ObligationError, ValueError) as exc:
        raise click.ClickException(str(exc)) from exc


def _format_obligation(o):
    anchor = o.anchor.isoformat() if o.anchor else '-'
    line = (
        f"{o.id:>4}  {anchor:<10}  {o.rule.frequency.value:<10}  "
        f"{o.classification.value:<7}  {o.amount:>10}  "
        f"{o.confirmation_mode.value:<9}  {o.name}"
    )
    if o.last_failure:
        line += f"  [failed {o.last_failure_on}: {o.last_failure}]"
    return line


def _describe(result):
    if isinstance(result, Materialized):
        return (f"Obligation {result.obligation_id}: materialized {result.occurrence_date} "
                f"as entry {result.ledger_entry_id}, next {result.new_anchor or 'none'}")
    if isinstance(result, AwaitingConfirmation):
        return (f"Obligation {result.obligation_id}: {result.occurrence_date} "
                f"awaiting confirmation")
    if isinstance(result, Failed):
        return (f"Obligation {result.obligation_id}: {result.occurrence_date} failed "
                f"({result.reason}), next {result.new_anchor or 'none'}")
    if isinstance(result, Skipped):
        return (f"Obligation {result.obligation_id}: skipped {result.occurrence_date}, "
                f"next {result.new_anchor or 'none'}")
    if isinstance(result, NotDue):
        return f"Obligation {result.obligation_id}: not due (anchor {result.anchor or 'none'})"
    return repr(result)


@click.group()
@click.option(
    '--config', 'config_path',
    default='config.yaml',
    type=click.Path(dir_okay=False),
    help='Path to config.yaml (defaults apply when it does not exist)'
)
@click.option(
    '--db', 'db_path',
    default=None,
    type=click.Path(dir_okay=False),
    help='SQLite database file (overrides config)'
)
@click.option(
    '--env-file', 'env_file',
    default=None,
    type=click.Path(exists=True, dir_okay=False),
    help='Optional .env file, e.g. setting OBLIGATIONS_LOG_LEVEL'
)
@click.option(
    '--log-level', 'log_level',
    default=None,
    type=click.Choice(['DEBUG', 'INFO', 'WARNING', 'ERROR'], case_sensitive=False),
    help='Logging level (overrides OBLIGATIONS_LOG_LEVEL and config)'
)
@click.pass_context
def main(ctx, config_path, db_path, env_file, log_level):
    """
    Schedule recurring obligations, materialize the ones that fall due into
    the ledger and forecast the ones still ahead.
    """
    if env_file:
        load_dotenv(env_file)

    cfg = load_config(config_path)
    if db_path:
        cfg['db_path'] = db_path

    level = log_level or os.getenv('OBLIGATIONS_LOG_LEVEL') or cfg.get('log_level', 'INFO')
    logging.basicConfig(
        level=str(level).upper(),
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )

    ctx.ensure_object(dict)
    ctx.obj['config'] = cfg
    with _reporting_errors():
        ctx.obj['scheduler'] = ObligationScheduler.from_config(cfg)


@main.command('import')
@click.argument('planned_file', required=False, type=click.Path(exists=True, dir_okay=False))
@click.pass_obj
def import_obligations(obj, planned_file):
    """Create obligations from a YAML file of planned entries."""
    path = planned_file or obj['config'].get('planned_obligations_file')
    if not path or not os.path.exists(path):
        raise click.ClickException('No planned obligations file given or configured.')
    scheduler = obj['scheduler']
    with _reporting_errors():
        obligations = load_planned_obligations(path)
        for obligation in obligations:
            created = scheduler.create(obligation)
            click.echo(f"Created {created.id}: {created.name} anchored {created.anchor}")
    click.echo(f"Imported {len(obligations)} obligation(s).")


@main.command()
@click.argument('obligation_id', type=int)
@click.pass_obj
def activate(obj, obligation_id):
    """Re-enable an obligation."""
    with _reporting_errors():
        obligation = obj['scheduler'].set_active(obligation_id, True)
    click.echo(_format_obligation(obligation))


@main.command()
@click.argument('obligation_id', type=int)
@click.pass_obj
def deactivate(obj, obligation_id):
    """Exclude an obligation from sweeps and forecasts."""
    with _reporting_errors():
        obligation = obj['scheduler'].set_active(obligation_id, False)
    click.echo(_format_obligation(obligation))


@main.command('list')
@click.option('--inactive/--active-only', 'include_inactive', default=True,
              help='Include deactivated obligations (default) or hide them.')
@click.pass_obj
def list_obligations(obj, include_inactive):
    """List stored obligations."""
    with _reporting_errors():
        listing = obj['scheduler'].list_obligations()
    shown = [o for o in listing.obligations if include_inactive or o.is_active]
    if not shown and not listing.rejected:
        click.echo('No obligations.')
    for obligation in shown:
        suffix = '' if obligation.is_active else '  (inactive)'
        click.echo(_format_obligation(obligation) + suffix)
    for obligation_id, exc in listing.rejected:
        click.echo(f"Obligation {obligation_id}: rejected ({exc})", err=True)


@main.command()
@click.argument('obligation_id', type=int)
@click.option('--name', default=None)
@click.option('--amount', default=None)
@click.option('--classification', default=None,
              type=click.Choice([c.value for c in Classification], case_sensitive=False))
@click.option('--frequency', default=None,
              type=click.Choice([f.value for f in Frequency], case_sensitive=False))
@click.option('--start', 'start_date', default=None, type=_DATE, help='New start date.')
@click.option('--end', 'end_date', default=None, type=_DATE, help='New end date.')
@click.option('--no-end', is_flag=True, default=False, help='Remove the end date.')
@click.option('--repeat-count', default=None, type=click.IntRange(min=1))
@click.option('--mode', 'confirmation_mode', default=None,
              type=click.Choice([m.value for m in ConfirmationMode], case_sensitive=False))
@click.option('--account', 'target_resource_ref', default=None)
@click.option('--version', 'expected_version', default=None, type=int,
              help='Refuse the edit unless the obligation is still at this version.')
@today_option
@click.pass_obj
def update(obj, obligation_id, no_end, expected_version, today, **fields):
    """Edit an obligation; a new frequency or start date re-anchors it."""
    changes = {k: v for k, v in fields.items() if v is not None}
    for key in ('start_date', 'end_date'):
        if key in changes:
            changes[key] = as_day(changes[key])
    if no_end:
        changes['end_date'] = None
    if not changes:
        raise click.UsageError('Nothing to update.')
    with _reporting_errors():
        obligation = obj['scheduler'].update(
            obligation_id, changes, now=as_day(today), expected_version=expected_version
        )
    click.echo(_format_obligation(obligation))


@main.command()
@click.argument('obligation_id', type=int)
@click.pass_obj
def delete(obj, obligation_id):
    """Remove an obligation. Ledger entries it already posted stay."""
    with _reporting_errors():
        obj['scheduler'].delete(obligation_id)
    click.echo(f"Deleted obligation {obligation_id}.")


@main.group()
def accounts():
    """Manage the accounts obligations post to."""


@accounts.command('add')
@click.argument('account_id')
@click.argument('name')
@click.option('--inactive', is_flag=True, default=False, help='Create the account disabled.')
@click.pass_obj
def add_account(obj, account_id, name, inactive):
    with _reporting_errors():
        obj['scheduler'].sink.add_account(account_id, name, is_active=not inactive)
    click.echo(f"Account {account_id} saved.")


@accounts.command('deactivate')
@click.argument('account_id')
@click.pass_obj
def deactivate_account(obj, account_id):
    with _reporting_errors():
        try:
            obj['scheduler'].sink.set_account_active(account_id, False)
        except LookupError as exc:
            raise click.ClickException(str(exc)) from exc
    click.echo(f"Account {account_id} deactivated.")


@main.command()
@today_option
@click.pass_obj
def due(obj, today):
    """List active obligations whose anchor has been reached."""
    with _reporting_errors():
        obligations = obj['scheduler'].list_due(as_day(today))
    if not obligations:
        click.echo('Nothing due.')
        return
    for obligation in obligations:
        click.echo(_format_obligation(obligation))


@main.command()
@today_option
@click.option('--days', default=7, show_default=True, type=click.IntRange(min=0),
              help='How many days ahead to look.')
@click.option('--limit', default=None, type=click.IntRange(min=1),
              help='Show at most this many obligations.')
@click.pass_obj
def upcoming(obj, today, days, limit):
    """List obligations falling due within the next few days."""
    with _reporting_errors():
        obligations = obj['scheduler'].upcoming(as_day(today), days_ahead=days, limit=limit)
    if not obligations:
        click.echo(f'Nothing due in the next {days} day(s).')
        return
    for obligation in obligations:
        click.echo(_format_obligation(obligation))


@main.command()
@today_option
@click.pass_obj
def sweep(obj, today):
    """Materialize every due automatic obligation."""
    with _reporting_errors():
        report = obj['scheduler'].run_due(as_day(today))
    for result in report.results:
        click.echo(_describe(result))
    for obligation_id in report.conflicts:
        click.echo(f"Obligation {obligation_id}: modified concurrently, left for the next sweep",
                   err=True)
    for obligation_id, reason in report.rejected.items():
        click.echo(f"Obligation {obligation_id}: rejected ({reason})", err=True)
    click.echo(
        f"Materialized {report.materialized}, awaiting {report.awaiting}, "
        f"failed {report.failed}."
    )


@main.command()
@click.argument('obligation_id', type=int)
@today_option
@click.pass_obj
def materialize(obj, obligation_id, today):
    """Drive one obligation's due occurrence."""
    with _reporting_errors():
        result = obj['scheduler'].materialize_due(obligation_id, as_day(today))
    click.echo(_describe(result))


@main.command()
@click.argument('obligation_id', type=int)
@today_option
@click.pass_obj
def confirm(obj, obligation_id, today):
    """Post a due obligation's pending occurrence to the ledger."""
    with _reporting_errors():
        result = obj['scheduler'].confirm(obligation_id, as_day(today))
    click.echo(_describe(result))


@main.command()
@click.argument('obligation_id', type=int)
@today_option
@click.pass_obj
def skip(obj, obligation_id, today):
    """Move past a due occurrence without posting it."""
    with _reporting_errors():
        result = obj['scheduler'].skip(obligation_id, as_day(today))
    click.echo(_describe(result))


@main.command()
@click.option('--month', default=None, help='Forecast a whole month, YYYY-MM.')
@click.option('--start', 'start', default=None, type=_DATE, help='Period start (YYYY-MM-DD).')
@click.option('--end', 'end', default=None, type=_DATE, help='Period end (YYYY-MM-DD).')
@click.option('--balance', default=None, type=str,
              help='Current balance; prints the projected balance as well.')
@click.option('--export', 'export_format', default=None, type=click.Choice(['csv']),
              help='Also write the period schedule with this output.')
@today_option
@click.pass_obj
def forecast(obj, month, start, end, balance, export_format, today):
    """Project pending income, expenses, savings and debt over a period."""
    with _reporting_errors():
        now = as_day(today)
        if month:
            period_start, period_end = month_bounds(month)
        elif start and end:
            period_start, period_end = as_day(start), as_day(end)
        else:
            period_start, period_end = month_bounds(now.strftime('%Y-%m'))
        if period_start > period_end:
            raise click.BadParameter('start must be on or before end')

        scheduler = obj['scheduler']
        result = scheduler.forecast(period_start, period_end, now)

    click.echo(f"Forecast {period_start} .. {period_end} as of {now}")
    click.echo(f"{'':<9}{'past':>12}{'pending':>12}")
    for classification in Classification:
        click.echo(
            f"{classification.value.lower():<9}"
            f"{result.past[classification]:>12.2f}"
            f"{result.pending[classification]:>12.2f}"
        )
    click.echo(f"Pending net: {result.pending_net():.2f}")
    if balance is not None:
        with _reporting_errors():
            projected = result.projected_balance(balance)
        click.echo(f"Projected balance: {projected:.2f}")
    if result.partial:
        click.echo(
            f"Warning: forecast is partial, enumeration truncated for "
            f"{len(result.truncated_ids)} obligation(s).", err=True
        )
    for obligation_id, reason in result.rejected.items():
        click.echo(f"Obligation {obligation_id} excluded: {reason}", err=True)

    if export_format:
        outputter = get_output(export_format, obj['config'])
        out_path = outputter.write(
            scheduler.schedule(period_start, period_end), period_start, period_end
        )
        click.echo(f"Schedule written to {out_path}")


@main.command()
@click.argument('obligation_id', type=int)
@click.option('--count', default=5, show_default=True, type=click.IntRange(min=1, max=100))
@click.option('--from', 'from_date', default=None, type=_DATE,
              help='Only list occurrences on or after this date.')
@click.pass_obj
def preview(obj, obligation_id, count, from_date):
    """Show an obligation's next occurrence dates."""
    with _reporting_errors():
        dates = obj['scheduler'].preview(obligation_id, count, from_date)
    if not dates:
        click.echo('No further occurrences.')
        return
    for d in dates:
        click.echo(d.isoformat())
