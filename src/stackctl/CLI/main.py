# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Command Line Interface for stackctl.
"""
import logging
import os
import time

import click
import yaml
from pydantic import ValidationError

from ..errors import StackError
from ..MANAGERS.service_orchestrator import ServiceOrchestrator
from ..MODELS.service_instance import OutcomeReport
from ..MODELS.settings import OrchestratorSettings
from ..MODELS.topology import Topology
from ..PARSERS.compose_parser import ComposeParser
from ..RUNNERS.dependency_resolver import DependencyResolver
from ..RUNNERS.process_driver import ProcessDriver


@click.group()
@click.option('--file', '-f', default='docker-compose.yml', envvar='STACKCTL_FILE',
              show_default=True, help='Compose file path')
@click.option('--state-dir', default='.stackctl', envvar='STACKCTL_STATE_DIR',
              show_default=True, help='Directory for logs and volumes')
@click.option('--grace-period', type=float, default=10.0, envvar='STACKCTL_STOP_GRACE_PERIOD',
              show_default=True, help='Seconds a service gets to stop before it is killed')
@click.option('--start-timeout', type=float, default=60.0, envvar='STACKCTL_START_TIMEOUT',
              show_default=True, help='Seconds a service gets to reach running')
@click.option('--kill-timeout', type=float, default=5.0, envvar='STACKCTL_KILL_TIMEOUT',
              show_default=True, help='Seconds to wait for a forced kill to be confirmed')
@click.option('--restart-max-delay', type=float, default=300.0, envvar='STACKCTL_RESTART_MAX_DELAY',
              show_default=True, help='Upper bound in seconds of the backoff between relaunches')
@click.option('--restart-reset-after', type=float, default=10.0, envvar='STACKCTL_RESTART_RESET_AFTER',
              show_default=True, help='Seconds a service must stay up to reset its backoff')
@click.option('--up-timeout', type=float, default=None, envvar='STACKCTL_UP_TIMEOUT',
              help='Seconds up waits for services before reporting')
@click.option('--verbose', '-v', count=True, help='Increase log verbosity')
@click.pass_context
def cli(ctx, file, state_dir, grace_period, start_timeout, kill_timeout,
        restart_max_delay, restart_reset_after, up_timeout, verbose):
    """
    stackctl - multi-service orchestrator.

    Runs the services of a compose file in dependency order, as native
    processes, and keeps them up according to their restart policies.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose > 1 else logging.INFO if verbose else logging.WARNING,
        format='%(asctime)s %(levelname)-7s %(name)s: %(message)s',
    )
    ctx.ensure_object(dict)
    ctx.obj['file'] = file
    try:
        ctx.obj['settings'] = OrchestratorSettings(
            state_dir=state_dir,
            stop_grace_period=grace_period,
            start_timeout=start_timeout,
            kill_timeout=kill_timeout,
            restart_max_delay=restart_max_delay,
            restart_reset_after=restart_reset_after,
            up_timeout=up_timeout,
        )
    except ValidationError as e:
        raise click.UsageError(
            '; '.join(f"{'.'.join(map(str, err['loc']))}: {err['msg']}" for err in e.errors())
        )


def _load(ctx) -> Topology:
    path = ctx.obj['file']
    if not os.path.exists(path):
        raise click.ClickException(f"{path} not found.")
    try:
        return ComposeParser().parse(path)
    except StackError as e:
        raise click.ClickException(str(e))


def _orchestrator(ctx) -> ServiceOrchestrator:
    settings = ctx.obj['settings']
    driver = ProcessDriver(settings.state_dir)
    base_dir = os.path.dirname(os.path.abspath(ctx.obj['file']))
    orchestrator = ServiceOrchestrator(driver, settings=settings, base_dir=base_dir)
    orchestrator.volumes.adopt(driver.list_volumes())
    return orchestrator


def _echo_report(report: OutcomeReport):
    click.echo(f"{'SERVICE':15} {'STATE':10} {'RESTARTS':8}  ERROR")
    click.echo("-" * 50)
    for o in report.outcomes:
        click.echo(f"{o.service:15} {o.state.value:10} {o.restart_count:<8}  {o.error or ''}")


@cli.command()
@click.pass_context
def config(ctx):
    """Validate the compose file and print the parsed services."""
    topology = _load(ctx)
    click.echo(yaml.safe_dump(topology.model_dump(mode='json', exclude_defaults=True), sort_keys=False))


@cli.command()
@click.pass_context
def plan(ctx):
    """Print the order services start in."""
    topology = _load(ctx)
    try:
        order = DependencyResolver().resolve_order(topology)
    except StackError as e:
        raise click.ClickException(str(e))
    for position, name in enumerate(order, 1):
        deps = topology.services[name].depends_on
        suffix = f"  (after {', '.join(deps)})" if deps else ""
        click.echo(f"{position:3}. {name}{suffix}")


@cli.command()
@click.option('--timeout', '-t', type=float, default=None,
              help='Take the stack down after this many seconds')
@click.pass_context
def up(ctx, timeout):
    """Start services and keep them running until interrupted."""
    topology = _load(ctx)
    orchestrator = _orchestrator(ctx)
    try:
        try:
            report = orchestrator.up(topology)
        except StackError as e:
            raise click.ClickException(str(e))
        _echo_report(report)

        click.echo("Running... Press Ctrl+C to stop.")
        deadline = None if timeout is None else time.monotonic() + timeout
        try:
            while deadline is None or time.monotonic() < deadline:
                time.sleep(0.2)
        except KeyboardInterrupt:
            pass

        click.echo("\nStopping services...")
        _echo_report(orchestrator.down(topology))
    finally:
        orchestrator.close()


@cli.group()
def volume():
    """Manage named volumes."""


@volume.command('ls')
@click.pass_context
def volume_ls(ctx):
    """List named volumes."""
    orchestrator = _orchestrator(ctx)
    click.echo(f"{'VOLUME':20} LOCATION")
    for handle in orchestrator.volumes.list():
        click.echo(f"{handle.name:20} {handle.ref}")


@volume.command('rm')
@click.argument('names', nargs=-1, required=True)
@click.pass_context
def volume_rm(ctx, names):
    """Remove named volumes."""
    orchestrator = _orchestrator(ctx)
    for name in names:
        try:
            removed = orchestrator.remove_volume(name)
        except StackError as e:
            raise click.ClickException(str(e))
        if not removed:
            raise click.ClickException(f"No such volume: {name}")
        click.echo(name)


def main():
    """
    Main entry point for the CLI.
    """
    cli(obj={})


if __name__ == '__main__':
    main()
