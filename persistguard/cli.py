import asyncio
import sys

import click

from .config import ConfigManager, configure_logging
from .engine import Engine
from .exceptions import PersistGuardError
from .export import read_json, write_json
from .models import RiskLevel
from .threat_intel import ThreatIntelStore

RISK_CHOICES = [level.value for level in RiskLevel]


def _build_engine(ctx) -> Engine:
    try:
        return Engine.from_config(ctx.obj['app_config'])
    except PersistGuardError as e:
        raise click.ClickException(str(e))


@click.group()
@click.option('--config', '-c', 'config_path', default='config.yaml', help='Configuration file path')
@click.option('--log-level', default=None, help='Override the configured log level')
@click.pass_context
def cli(ctx, config_path, log_level):
    """Persistence mechanism scanner"""
    ctx.ensure_object(dict)
    try:
        app_config = ConfigManager(config_path).get_config()
    except PersistGuardError as e:
        raise click.ClickException(str(e))
    configure_logging(log_level or app_config.logging.level, app_config.logging.log_dir)
    ctx.obj['config'] = config_path
    ctx.obj['app_config'] = app_config


@cli.command()
@click.option('--output', '-o', type=click.Path(dir_okay=False), help='Write the result as JSON')
@click.option('--intel', 'intel_files', multiple=True, type=click.Path(exists=True, dir_okay=False),
              help='Threat intel file (YAML or JSON); repeatable')
@click.option('--probe', 'probe_names', multiple=True, help='Run only this probe; repeatable')
@click.option('--min-risk', type=click.Choice(RISK_CHOICES), default='medium',
              help='Lowest risk level to list in the summary')
@click.pass_context
def scan(ctx, output, intel_files, probe_names, min_risk):
    """Run a persistence scan on this host"""
    engine = _build_engine(ctx)
    try:
        for path in intel_files:
            engine.intel_store.load_file(path)
    except PersistGuardError as e:
        raise click.ClickException(str(e))

    def show_progress(label: str, fraction: float):
        click.echo(f"[{fraction * 100:5.1f}%] {label}", err=True)

    try:
        result = asyncio.run(engine.scan(progress=show_progress, only=probe_names or None))
    except KeyError as e:
        raise click.ClickException(str(e.args[0]) if e.args else str(e))

    _print_result(result, RiskLevel(min_risk))

    if output:
        write_json(result, output)
        click.echo(f"Result written to {output}")

    if result.status.value == 'failed':
        sys.exit(1)


@cli.command()
@click.pass_context
def probes(ctx):
    """List probes registered for this platform"""
    engine = _build_engine(ctx)
    if engine.platform is None:
        raise click.ClickException(f"Unsupported platform: {sys.platform}")
    click.echo(f"Probes for {engine.platform.value}:")
    for probe in engine.probes:
        kinds = ', '.join(k.value for k in probe.mechanism_kinds)
        click.echo(f"  {probe.name:<22} {probe.description} [{kinds}]")


@cli.command()
@click.argument('file', type=click.Path(exists=True, dir_okay=False))
@click.option('--min-risk', type=click.Choice(RISK_CHOICES), default='low',
              help='Lowest risk level to list')
def show(file, min_risk):
    """Print a previously exported scan result"""
    try:
        result = read_json(file)
    except PersistGuardError as e:
        raise click.ClickException(str(e))
    _print_result(result, RiskLevel(min_risk))


@cli.command('intel-check')
@click.argument('file', type=click.Path(exists=True, dir_okay=False))
def intel_check(file):
    """Validate a threat intel file and print its set sizes"""
    store = ThreatIntelStore()
    try:
        snapshot = store.load_file(file)
    except PersistGuardError as e:
        raise click.ClickException(str(e))
    for key, size in snapshot.sizes().items():
        click.echo(f"{key}: {size}")


def _print_result(result, min_risk: RiskLevel):
    platform = result.platform.value if result.platform else 'unknown'
    click.echo(f"Scan {result.scan_id} ({platform}) - {result.status.value}")
    click.echo(result.summary_line())

    items = sorted(result.items_at_least(min_risk), key=lambda i: -i.risk_level.rank)
    for item in items:
        click.echo(f"  [{item.risk_level.value.upper():8}] {item.mechanism_kind.value}: {item.name}")
        click.echo(f"             {item.path}")
        if item.command:
            click.echo(f"             > {item.command}")
        for indicator in item.indicators:
            click.echo(f"             ! {indicator}")

    if result.errors:
        click.echo(f"{len(result.errors)} error(s):")
        for error in result.errors:
            click.echo(f"  {error.probe}: {error.message}")


if __name__ == '__main__':
    cli()
