"""
Command Line Interface for stackup.
"""
import asyncio
import functools
import logging
import os
import signal
import subprocess
import sys
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import click
import psutil
import yaml

from ..errors import (
    ConfigurationError,
    CyclicDependency,
    DependencyTimeout,
    LaunchError,
    ResourceError,
    StackupError,
    UnknownDependency,
)
from ..MANAGERS.environment_manager import EnvironmentManager
from ..MANAGERS.service_orchestrator import ServiceOrchestrator
from ..MANAGERS.state_store import StateStore
from ..MANAGERS.volume_manager import VolumeManager
from ..MODELS.orchestration_config import OrchestrationConfig
from ..MODELS.runtime_state import RunOutcome, RuntimeState
from ..MODELS.settings import OrchestratorSettings
from ..PARSERS.compose_parser import ComposeParser, normalize_project_name
from ..PARSERS.env_parser import EnvParser
from ..RUNNERS.dependency_resolver import DependencyResolver
from ..RUNNERS.process_runner import LocalProcessSubstrate, terminate_process_tree

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_CYCLIC_DEPENDENCY = 3
EXIT_UNKNOWN_DEPENDENCY = 4
EXIT_DEPENDENCY_TIMEOUT = 5
EXIT_LAUNCH_FAILURE = 6
EXIT_RESOURCE_ERROR = 7
EXIT_CONFIGURATION_ERROR = 8

OUTCOME_EXIT_CODES = {
    RunOutcome.SUCCESS: EXIT_OK,
    RunOutcome.STOPPED: EXIT_OK,
    RunOutcome.DEPENDENCY_TIMEOUT: EXIT_DEPENDENCY_TIMEOUT,
    RunOutcome.LAUNCH_FAILURE: EXIT_LAUNCH_FAILURE,
}

# Seconds between state file reads while following a detached run
POLL_INTERVAL = 0.5


def exit_code_for(error: BaseException) -> int:
    """Maps an error to the process exit code reported for it."""
    if isinstance(error, CyclicDependency):
        return EXIT_CYCLIC_DEPENDENCY
    if isinstance(error, UnknownDependency):
        return EXIT_UNKNOWN_DEPENDENCY
    if isinstance(error, DependencyTimeout):
        return EXIT_DEPENDENCY_TIMEOUT
    if isinstance(error, LaunchError):
        return EXIT_LAUNCH_FAILURE
    if isinstance(error, ResourceError):
        return EXIT_RESOURCE_ERROR
    if isinstance(error, ConfigurationError):
        return EXIT_CONFIGURATION_ERROR
    return EXIT_ERROR


@dataclass
class Stack:
    """Everything a command needs to know about the selected project."""
    config: OrchestrationConfig
    settings: OrchestratorSettings
    base_dir: str

    @property
    def project(self) -> str:
        return self.config.project_name

    @property
    def state_root(self) -> str:
        return os.path.join(self.base_dir, self.settings.state_dir)

    def state_store(self) -> StateStore:
        return StateStore(self.state_root, self.project)

    def volume_manager(self) -> VolumeManager:
        return VolumeManager(self.base_dir, os.path.join(self.settings.state_dir, "volumes"))


def handle_errors(func):
    """
    Reports stackup errors on stderr and exits with the matching code.
    """
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        ctx = click.get_current_context()
        try:
            return func(*args, **kwargs)
        except StackupError as e:
            click.echo(f"Error: {e}", err=True)
            ctx.exit(exit_code_for(e))
        except OSError as e:
            click.echo(f"Error: {e}", err=True)
            ctx.exit(EXIT_ERROR)
    return wrapper


def load_stack(ctx: click.Context, resolve: bool = True) -> Stack:
    """
    Parses the compose file and, if asked, resolves it against the variable set.

    :raises ConfigurationError: If the file is missing or invalid.
    """
    opts = ctx.obj['options']
    compose_file = os.path.abspath(opts['file'])
    base_dir = os.path.dirname(compose_file)
    if not os.path.exists(compose_file):
        raise ConfigurationError(f"{opts['file']} not found.")

    config = ComposeParser(project_name=opts['project_name']).parse(compose_file)
    if resolve:
        env_file = opts['env_file'] or os.path.join(base_dir, '.env')
        variables = EnvParser.load(env_file, inherit_environ=opts['inherit_env'])
        config = EnvironmentManager(variables, base_dir).resolve_config(config)

    try:
        settings = OrchestratorSettings(
            project_name=config.project_name,
            state_dir=opts['state_dir'],
            dependency_timeout=opts['dependency_timeout'],
            max_restarts=opts['max_restarts'],
        )
    except ValueError as e:
        raise ConfigurationError(f"Invalid settings: {e}") from e
    return Stack(config=config, settings=settings, base_dir=base_dir)


def project_name_for(ctx: click.Context) -> str:
    """The project name, without requiring a valid compose file."""
    opts = ctx.obj['options']
    if opts['project_name']:
        return normalize_project_name(opts['project_name'])
    if os.path.exists(opts['file']):
        return load_stack(ctx, resolve=False).project
    return normalize_project_name(os.path.basename(os.path.dirname(os.path.abspath(opts['file']))))


def supervisor_alive(state: Dict[str, Any]) -> bool:
    pid = state.get('supervisor_pid')
    return bool(pid) and pid != os.getpid() and psutil.pid_exists(pid)


def print_transition(name: str, old: RuntimeState, new: RuntimeState):
    click.echo(f"{name:15} {old.value:15} -> {new.value}")


@click.group()
@click.option('--file', '-f', default='docker-compose.yml', envvar='STACKUP_FILE',
              show_default=True, help='Compose file path')
@click.option('--env-file', default=None, envvar='STACKUP_ENV_FILE',
              help='Variable file (default: .env next to the compose file)')
@click.option('--project-name', '-p', default=None, envvar='STACKUP_PROJECT_NAME',
              help='Project name (default: the compose name or directory)')
@click.option('--inherit-env', is_flag=True, envvar='STACKUP_INHERIT_ENV',
              help='Use the process environment as the base variable set')
@click.option('--state-dir', default='.stackup', envvar='STACKUP_STATE_DIR', show_default=True,
              help='State directory, relative to the compose file')
@click.option('--dependency-timeout', default='300s', envvar='STACKUP_DEPENDENCY_TIMEOUT',
              show_default=True, help='How long a service waits for its dependencies')
@click.option('--max-restarts', default=5, type=int, envvar='STACKUP_MAX_RESTARTS',
              show_default=True, help='Restart cap for the on-failure policy')
@click.option('--verbose', '-v', is_flag=True, envvar='STACKUP_VERBOSE', help='Debug logging')
@click.pass_context
def cli(ctx, file, env_file, project_name, inherit_env, state_dir,
        dependency_timeout, max_restarts, verbose):
    """
    stackup - run compose-style stacks as native processes.

    Starts services in dependency order, waits for each to be healthy before
    starting what depends on it, and stops them in reverse.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj['options'] = {
        'file': file,
        'env_file': env_file,
        'project_name': project_name,
        'inherit_env': inherit_env,
        'state_dir': state_dir,
        'dependency_timeout': dependency_timeout,
        'max_restarts': max_restarts,
        'verbose': verbose,
    }


async def supervise(stack: Stack, on_transition=None) -> RunOutcome:
    """
    Runs the stack in this process until it is stopped by a signal.
    """
    volume_manager = stack.volume_manager()
    substrate = LocalProcessSubstrate(
        stack.base_dir,
        log_dir=os.path.join(stack.state_root, "logs"),
        volume_manager=volume_manager,
        stop_timeout=stack.settings.stop_timeout,
    )
    store = stack.state_store()
    orchestrator = ServiceOrchestrator.from_config(
        stack.config, substrate, stack.settings, base_dir=stack.base_dir,
        volume_manager=volume_manager, on_transition=on_transition, state_store=store,
    )
    store.begin(orchestrator.graph.startup_order(), os.getpid())

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, orchestrator.request_stop)
    try:
        return await orchestrator.run()
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)


@cli.command()
@click.option('--detach', '-d', is_flag=True, help='Run in background')
@click.pass_context
@handle_errors
def up(ctx, detach):
    """Start services defined in the compose file."""
    stack = load_stack(ctx)
    # Fail fast on graph errors, before anything is written or started
    DependencyResolver().build(stack.config.services.values())

    store = stack.state_store()
    if supervisor_alive(store.load()):
        click.echo(f"Error: project {stack.project} is already running.", err=True)
        ctx.exit(EXIT_ERROR)

    if detach:
        ctx.exit(_up_detached(ctx, stack))

    click.echo("Running... Press Ctrl+C to stop.")
    outcome = asyncio.run(supervise(stack, on_transition=print_transition))
    click.echo(f"Services stopped ({outcome.value}).")
    ctx.exit(OUTCOME_EXIT_CODES[outcome])


def _up_detached(ctx: click.Context, stack: Stack) -> int:
    """
    Starts a supervisor in the background and follows its state file until
    startup has settled.
    """
    opts = ctx.obj['options']
    store = stack.state_store()
    store.clear()

    args = [sys.executable, '-m', 'stackup.CLI.main',
            '--file', os.path.abspath(opts['file']),
            '--project-name', stack.project,
            '--state-dir', opts['state_dir'],
            '--dependency-timeout', str(opts['dependency_timeout']),
            '--max-restarts', str(opts['max_restarts'])]
    if opts['env_file']:
        args += ['--env-file', os.path.abspath(opts['env_file'])]
    if opts['inherit_env']:
        args.append('--inherit-env')
    if opts['verbose']:
        args.append('--verbose')
    args.append('up')

    log_path = os.path.join(store.directory, "supervisor.log")
    os.makedirs(store.directory, exist_ok=True)
    with open(log_path, 'a') as log:
        supervisor = subprocess.Popen(
            args, cwd=stack.base_dir, stdout=log, stderr=subprocess.STDOUT,
            stdin=subprocess.DEVNULL, start_new_session=True,
        )

    seen: Dict[str, str] = {}
    while True:
        state = store.load() if store.exists() else {}
        for name, entry in state.get('services', {}).items():
            if seen.get(name) != entry['state']:
                click.echo(f"{name:15} {seen.get(name, '-'):15} -> {entry['state']}")
                seen[name] = entry['state']
        if state.get('outcome'):
            outcome = RunOutcome(state['outcome'])
            break
        exit_code = supervisor.poll()
        if exit_code is not None:
            click.echo(f"Error: supervisor exited with code {exit_code}, see {log_path}", err=True)
            return exit_code or EXIT_ERROR
        time.sleep(POLL_INTERVAL)

    click.echo(f"Startup finished: {outcome.value} (supervisor pid {supervisor.pid})")
    return OUTCOME_EXIT_CODES[outcome]


@cli.command()
@click.option('--timeout', '-t', default=30.0, type=float, show_default=True,
              help='Seconds to wait for the supervisor to stop the stack')
@click.pass_context
@handle_errors
def down(ctx, timeout):
    """Stop all running services."""
    opts = ctx.obj['options']
    base_dir = os.path.dirname(os.path.abspath(opts['file']))
    store = StateStore(os.path.join(base_dir, opts['state_dir']), project_name_for(ctx))
    if not store.exists():
        click.echo("Nothing to stop.")
        return

    state = store.load()
    if supervisor_alive(state):
        pid = state['supervisor_pid']
        click.echo(f"Stopping supervisor (pid {pid})...")
        os.kill(pid, signal.SIGTERM)
        try:
            psutil.Process(pid).wait(timeout=timeout)
        except psutil.TimeoutExpired:
            click.echo("Supervisor did not stop in time, stopping services directly.", err=True)
        except psutil.NoSuchProcess:
            pass
        state = store.load()

    # Anything still recorded as alive is stopped here, dependents first
    for name in reversed(state.get('order', [])):
        entry = state['services'].get(name, {})
        if entry.get('state') == RuntimeState.STOPPED.value:
            continue
        pid = entry.get('pid')
        click.echo(f"Stopping service: {name}...")
        if pid:
            terminate_process_tree(pid)
        store.record_service(name, RuntimeState.STOPPED.value)

    click.echo("Services stopped.")


@cli.command()
@click.pass_context
@handle_errors
def status(ctx):
    """List service status"""
    opts = ctx.obj['options']
    base_dir = os.path.dirname(os.path.abspath(opts['file']))
    project = project_name_for(ctx)
    store = StateStore(os.path.join(base_dir, opts['state_dir']), project)
    if not store.exists():
        click.echo(f"No services recorded for project {project}.")
        return

    state = store.load()
    click.echo(f"{'SERVICE':15} {'STATE':15} {'PID':8} {'RESTARTS':8}")
    click.echo("-" * 49)
    for name in state.get('order', []):
        entry = state['services'].get(name, {})
        value = entry.get('state', 'unknown')
        pid = entry.get('pid')
        if value != RuntimeState.STOPPED.value and pid and not psutil.pid_exists(pid):
            value = f"{value} (exited)"
        click.echo(f"{name:15} {value:15} {str(pid or '-'):8} {entry.get('restarts', 0):<8}")
    if not supervisor_alive(state):
        click.echo("(no supervisor running)")


@cli.command()
@click.pass_context
@handle_errors
def config(ctx):
    """Print the resolved configuration and startup order"""
    stack = load_stack(ctx)
    graph = DependencyResolver().build(stack.config.services.values())

    document = {
        'name': stack.project,
        'services': {
            name: svc.model_dump(mode='json', exclude={'name', 'environment_files'})
            for name, svc in stack.config.services.items()
        },
        'networks': {n: d.model_dump(mode='json', exclude={'name'}) for n, d in stack.config.networks.items()},
        'volumes': {n: d.model_dump(mode='json', exclude={'name'}) for n, d in stack.config.volumes.items()},
    }
    click.echo(yaml.safe_dump(document, sort_keys=False).rstrip())
    click.echo("")
    click.echo(f"# startup order: {', '.join(graph.startup_order())}")
    for i, level in enumerate(graph.startup_levels()):
        click.echo(f"#   wave {i + 1}: {', '.join(level)}")


@cli.group()
def volume():
    """Manage named volumes"""


@volume.command('ls')
@click.pass_context
@handle_errors
def volume_ls(ctx):
    """List the project's volumes"""
    opts = ctx.obj['options']
    base_dir = os.path.dirname(os.path.abspath(opts['file']))
    prefix = f"{project_name_for(ctx)}_"
    manager = VolumeManager(base_dir, os.path.join(opts['state_dir'], "volumes"))
    click.echo(f"{'VOLUME':30} {'CREATED':25} {'SIZE':>10}")
    for vol in manager.list_volumes(prefix):
        size = manager.get_volume_size(vol.name)
        click.echo(f"{vol.name:30} {vol.created:25} {size:>10}")


@volume.command('rm')
@click.argument('names', nargs=-1, required=True)
@click.pass_context
@handle_errors
def volume_rm(ctx, names: List[str]):
    """Delete volumes and their data"""
    opts = ctx.obj['options']
    base_dir = os.path.dirname(os.path.abspath(opts['file']))
    project = project_name_for(ctx)
    store = StateStore(os.path.join(base_dir, opts['state_dir']), project)
    if store.exists() and supervisor_alive(store.load()):
        click.echo(f"Error: project {project} is running, stop it first.", err=True)
        ctx.exit(EXIT_ERROR)

    manager = VolumeManager(base_dir, os.path.join(opts['state_dir'], "volumes"))
    missing = False
    for name in names:
        scoped = name if name.startswith(f"{project}_") else f"{project}_{name}"
        if manager.remove_volume(scoped):
            click.echo(f"Removed {scoped}")
        else:
            click.echo(f"Error: no such volume: {scoped}", err=True)
            missing = True
    if missing:
        ctx.exit(EXIT_ERROR)


def main(argv: Optional[List[str]] = None):
    """
    Main entry point for the CLI.
    """
    cli(args=argv, obj={})


if __name__ == '__main__':
    main()
