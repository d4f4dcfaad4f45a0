"""
Command Line Interface for nodestack.
"""
import click

from ..ADAPTERS.interactive_surface import InteractiveSurface
from ..errors import ConfigError, MetricsUnavailable, StreamError
from ..MANAGERS.lifecycle_orchestrator import LifecycleOrchestrator
from ..MODELS.log_line import Severity
from ..MODELS.stack_config import StackConfig
from ..MODELS.stack_state import HealthStatus
from ..PARSERS.env_loader import load_environment
from ..UTILS.logging_setup import setup_logging

SEVERITY_COLORS = {
    Severity.ERROR: "red",
    Severity.WARN: "yellow",
    Severity.DEBUG: "bright_black",
}

HEALTH_COLORS = {
    HealthStatus.HEALTHY: "green",
    HealthStatus.UNHEALTHY: "red",
    HealthStatus.UNKNOWN: "yellow",
}


@click.group()
@click.option('--path', '-p', default=None, help='Directory holding the compose definition (default: local_reth)')
@click.option('--compose-file', '-f', default=None, help='Compose file, relative to --path')
@click.option('--block-tip', '-b', default=None, help='Block tip to sync to (default: $RETH_TIP)')
@click.option('--grafana-port', type=int, default=None, help='Grafana port (default: 3000)')
@click.option('--monitoring-port', type=int, default=None, help='Node metrics port (default: 9000)')
@click.option('--rpc-port', type=int, default=None, help='Node JSON-RPC port (default: 8545)')
@click.option('--env-file', default='.env', help='Environment file to load')
@click.option('--verbose', '-v', is_flag=True, help='Verbose output')
@click.pass_context
def cli(ctx, path, compose_file, block_tip, grafana_port, monitoring_port, rpc_port, env_file, verbose):
    """
    nodestack - run a Reth node with Prometheus and Grafana.

    Starts, stops and inspects the node stack defined by a compose file.
    """
    ctx.ensure_object(dict)
    ctx.obj['verbose'] = verbose
    if 'surface' in ctx.obj:
        return

    env = load_environment(env_file)
    setup_logging(verbose, env.log_level)
    try:
        config = StackConfig.build(
            working_dir=path or env.working_dir,
            compose_file=compose_file,
            block_tip=block_tip or env.block_tip,
            grafana_port=grafana_port,
            metrics_port=monitoring_port,
            rpc_port=rpc_port,
        )
    except ConfigError as e:
        ctx.fail(str(e))
    orchestrator = LifecycleOrchestrator.from_config(config, engine=ctx.obj.get('engine'))
    ctx.call_on_close(orchestrator.close)
    ctx.obj['surface'] = InteractiveSurface(orchestrator)


def _echo_result(ctx, result) -> None:
    if result.success:
        click.echo(result.message)
    else:
        click.echo(f"Error: {result.message}", err=True)
        ctx.exit(1)


@cli.command()
@click.option('--block-tip', '-b', default=None, help='Block tip overriding the configured one')
@click.pass_context
def start(ctx, block_tip):
    """Start the node stack and wait until it is ready."""
    surface = ctx.obj['surface']
    click.echo("\n--- Starting node stack ---")
    try:
        result = surface.start(block_tip)
    except ConfigError as e:
        ctx.fail(str(e))
    _echo_result(ctx, result)
    click.echo("Run 'nodestack logs -f' to follow the node logs.")


@cli.command()
@click.pass_context
def stop(ctx):
    """Stop the node stack and remove its containers."""
    click.echo("\n--- Stopping node stack ---")
    _echo_result(ctx, ctx.obj['surface'].stop())


@cli.command()
@click.pass_context
def status(ctx):
    """Show the stack phase and service health."""
    report = ctx.obj['surface'].status()
    click.echo(f"Phase: {report.phase.value}")
    if report.snapshot.last_error:
        click.echo(f"Last error: {report.snapshot.last_error}")
    if not report.running:
        click.echo("No node services are currently running.")
    click.echo(f"{'SERVICE':15} {'STATE':10} {'HEALTH':10}")
    click.echo("-" * 37)
    for name, health in report.services.items():
        state = "running" if name in report.running else "-"
        click.echo(f"{name:15} {state:10} " + click.style(f"{health.value:10}", fg=HEALTH_COLORS[health]))


def _echo_line(line) -> None:
    text = f"{line.service:12} | {line.text}"
    click.echo(click.style(text, fg=SEVERITY_COLORS.get(line.severity)))


@cli.command()
@click.argument('service', required=False)
@click.option('--lines', '-n', type=click.IntRange(min=0), default=None, help='Number of lines to display')
@click.option('--follow', '-f', is_flag=True, help='Stream new log lines until interrupted')
@click.pass_context
def logs(ctx, service, lines, follow):
    """Show logs of a service (the node by default)."""
    surface = ctx.obj['surface']
    try:
        if follow:
            click.echo("--- Following node logs (press Ctrl+C to stop) ---")
            with surface.follow(service) as session:
                try:
                    for line in session:
                        _echo_line(line)
                except KeyboardInterrupt:
                    click.echo("\nStopping log tailing...")
            return

        entries = surface.logs(service, lines)
    except ConfigError as e:
        ctx.fail(str(e))
    except StreamError as e:
        click.echo(f"Error: {e}", err=True)
        ctx.exit(1)

    if not entries:
        click.echo("No logs available.")
    for line in entries:
        _echo_line(line)


@cli.command()
@click.pass_context
def grafana(ctx):
    """Check whether the Grafana dashboard is ready."""
    _echo_result(ctx, ctx.obj['surface'].grafana())


@cli.command()
@click.pass_context
def metrics(ctx):
    """Fetch metrics from the node's metrics endpoint."""
    try:
        samples = ctx.obj['surface'].metrics()
    except MetricsUnavailable as e:
        click.echo(f"Error: {e}", err=True)
        ctx.exit(1)

    if ctx.obj.get('verbose'):
        for key, value in sorted(samples.items()):
            click.echo(f"  {key}: {value}")
    click.echo(f"Retrieved {len(samples)} metrics")


@cli.command()
@click.pass_context
def urls(ctx):
    """Show the URLs of all services."""
    click.echo("Service URLs:")
    for service, url in ctx.obj['surface'].urls().items():
        click.echo(f"  {service}: {url}")


def main():
    """
    Main entry point for the CLI.
    """
    cli(obj={})


if __name__ == '__main__':
    main()
