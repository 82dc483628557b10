"""pideploy command-line interface.

Commands:
    pideploy run ARTIFACT [-- PROGRAM_ARGS...]   Deploy and start (--debug to attach jdb)
    pideploy logs                                Stream the program's output
    pideploy stop                                Stop the program on the target
    pideploy sessions                            List (and prune) debug sessions
    pideploy config show|set                     Inspect or change saved settings
"""

import logging
import sys
from dataclasses import asdict
from pathlib import Path, PurePosixPath

import click
from rich.console import Console
from rich.table import Table

from pideploy import __version__
from pideploy.config_manager import ConfigError, ConfigManager, PiDeployConfig
from pideploy.lifecycle_controller import LaunchState, SessionDecision, SessionLifecycleController
from pideploy.modules.debugger import JdbDebugSessionService
from pideploy.modules.file_transfer import DEFAULT_LOG_FILE, ArtifactUploader, DeployError
from pideploy.modules.notifications import NotificationHandler
from pideploy.modules.ssh_connector import SSHConfig, SSHConnectionError
from pideploy.process_events import STDERR, ProcessEvents, RemoteLogStreamer
from pideploy.run_parameters import ConfigurationError, RunConfiguration
from pideploy.session_registry import FileSessionRegistry, PidProcess

logger = logging.getLogger(__name__)


def _load_config(ctx: click.Context) -> PiDeployConfig:
    try:
        return ConfigManager.load_config(ctx.obj.get("config_path"))
    except ConfigError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


TARGET_OPTIONS = [
    click.option("--host", "hostname", help="Target hostname or IP address"),
    click.option("--user", "username", help="SSH user (default from config: pi)"),
    click.option("--key", "key_path", type=click.Path(path_type=Path), help="SSH private key"),
    click.option("--ssh-port", type=int, help="SSH port (default 22)"),
    click.option("--deploy-path", help="Remote deploy directory, relative to the user's home"),
]


def target_options(func):
    """Options selecting the deploy target, shared by run/logs/stop."""
    for option in reversed(TARGET_OPTIONS):
        func = option(func)
    return func


def _ssh_config(
    config: PiDeployConfig,
    hostname: str | None,
    username: str | None,
    key_path: Path | None,
    ssh_port: int | None,
) -> SSHConfig:
    host = hostname or config.hostname
    if not host:
        click.echo(
            "Error: No target host configured. "
            "Pass --host or run: pideploy config set hostname <ip>",
            err=True,
        )
        sys.exit(1)

    return SSHConfig(
        host=host,
        user=username or config.username,
        key_path=key_path or Path(config.key_path),
        port=ssh_port or config.ssh_port,
    )


def _print_output(line: str, stream: str) -> None:
    click.echo(line, err=stream == STDERR)


def _stream_logs(ssh_config: SSHConfig, log_path: PurePosixPath, lines: int | None) -> int:
    events = ProcessEvents(
        on_output=_print_output,
        on_will_terminate=lambda _destroyed: click.echo("\nStopped following output.", err=True),
    )
    return RemoteLogStreamer.follow(ssh_config, log_path, events, lines=lines)


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.option("--verbose", "-v", is_flag=True, help="Show debug output")
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False),
    help="Config file (default: ~/.pideploy/config.toml)",
)
@click.version_option(version=__version__)
@click.pass_context
def main(ctx: click.Context, verbose: bool, config_path: str | None) -> None:
    """Deploy JVM applications to a Raspberry Pi over SSH and debug them remotely."""
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO, format="%(message)s")
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


@main.command(context_settings={"ignore_unknown_options": True})
@click.argument("artifact", type=click.Path(exists=True, path_type=Path))
@click.argument("program_args", nargs=-1, type=click.UNPROCESSED)
@target_options
@click.option("--main", "main_class", help="Fully qualified main class")
@click.option("--debug", is_flag=True, help="Start with a JDWP agent and attach a debugger")
@click.option("--debug-port", help="JDWP port on the target (default 5005)")
@click.option("--cp", "classpath", multiple=True, help="Remote classpath entry (repeatable)")
@click.option(
    "--vm-option",
    "vm_options",
    multiple=True,
    help="JVM option (repeatable). Do not add a second -agentlib:jdwp here.",
)
@click.option("--sudo/--no-sudo", "use_sudo", default=None, help="Run the program as root")
@click.option(
    "--keep-previous", is_flag=True, help="Do not stop a running instance before deploying"
)
@click.option(
    "--follow", "-f", is_flag=True, help="Stream program output after starting (not with --debug)"
)
@click.pass_context
def run(
    ctx: click.Context,
    artifact: Path,
    program_args: tuple[str, ...],
    hostname: str | None,
    username: str | None,
    key_path: Path | None,
    ssh_port: int | None,
    deploy_path: str | None,
    main_class: str | None,
    debug: bool,
    debug_port: str | None,
    classpath: tuple[str, ...],
    vm_options: tuple[str, ...],
    use_sudo: bool | None,
    keep_previous: bool,
    follow: bool,
) -> None:
    """Deploy ARTIFACT (jar or classes directory) and start it on the target.

    \b
    Examples:
        pideploy run build/libs/app.jar --host 192.168.1.5 --main com.example.Main
        pideploy run out/classes --debug -- --flag value
    """
    if debug and follow:
        # The attached debugger owns the terminal until it exits
        raise click.UsageError(
            "--follow cannot be combined with --debug. "
            "Stream the output with `pideploy logs` in another terminal."
        )

    config = _load_config(ctx)

    try:
        configuration = RunConfiguration.from_config(
            config,
            artifact,
            main_class=main_class,
            hostname=hostname,
            username=username,
            key_path=key_path,
            ssh_port=ssh_port,
            deploy_path=deploy_path,
            debug_port=debug_port,
            program_arguments=program_args or None,
            classpath=classpath or None,
            vm_options=vm_options or None,
            use_sudo=use_sudo,
            stop_previous=False if keep_previous else None,
        )

        registry = FileSessionRegistry()
        controller = SessionLifecycleController(
            uploader=ArtifactUploader(),
            registry=registry,
            debugger=JdbDebugSessionService(
                command_template=config.debugger_command,
                attach_timeout=config.attach_timeout,
            ),
            notifier=NotificationHandler(command=config.notification_command),
        )
        outcome = controller.run(configuration, debug=debug)

    except ConfigurationError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    if outcome.state == LaunchState.TERMINAL:
        sys.exit(1)

    launch = outcome.launch
    click.echo(
        f"Started {launch.parameters.main_entry_point} on {launch.ssh_config.host} "
        f"(log: {outcome.upload.remote_log_path})"
    )

    if outcome.decision in (
        SessionDecision.LAUNCHING_FRESH,
        SessionDecision.TEARING_DOWN_THEN_LAUNCHING,
    ):
        _wait_for_debugger(registry, outcome.descriptor)
        return

    if follow:
        sys.exit(_stream_logs(launch.ssh_config, outcome.upload.remote_log_path, lines=None))


def _wait_for_debugger(registry: FileSessionRegistry, descriptor) -> None:
    """Hand the terminal to a freshly started debugger until it exits."""
    process = descriptor.process
    if not isinstance(process, PidProcess) or process.popen is None:
        return

    try:
        process.popen.wait()
    except KeyboardInterrupt:
        process.popen.terminate()
        process.popen.wait()
    finally:
        registry.remove(descriptor)


@main.command()
@target_options
@click.option("--lines", "-n", type=int, help="Start with the last N lines (default: all)")
@click.pass_context
def logs(
    ctx: click.Context,
    hostname: str | None,
    username: str | None,
    key_path: Path | None,
    ssh_port: int | None,
    deploy_path: str | None,
    lines: int | None,
) -> None:
    """Stream the deployed program's output until Ctrl+C."""
    config = _load_config(ctx)
    ssh_config = _ssh_config(config, hostname, username, key_path, ssh_port)
    log_path = PurePosixPath(deploy_path or config.deploy_path) / DEFAULT_LOG_FILE

    try:
        sys.exit(_stream_logs(ssh_config, log_path, lines))
    except OSError as e:
        click.echo(f"Error: Failed to start ssh: {e}", err=True)
        sys.exit(1)


@main.command()
@target_options
@click.option("--main", "main_class", help="Fully qualified main class")
@click.option("--sudo/--no-sudo", "use_sudo", default=None, help="Program runs as root")
@click.pass_context
def stop(
    ctx: click.Context,
    hostname: str | None,
    username: str | None,
    key_path: Path | None,
    ssh_port: int | None,
    deploy_path: str | None,
    main_class: str | None,
    use_sudo: bool | None,
) -> None:
    """Stop the deployed program on the target."""
    config = _load_config(ctx)
    ssh_config = _ssh_config(config, hostname, username, key_path, ssh_port)
    main_class = main_class or config.main_class
    if not main_class:
        click.echo("Error: No main class configured. Pass --main.", err=True)
        sys.exit(1)

    try:
        stopped = ArtifactUploader().stop(
            ssh_config, main_class, use_sudo=config.use_sudo if use_sudo is None else use_sudo
        )
    except (DeployError, SSHConnectionError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    if stopped:
        click.echo(f"Stopped {main_class} on {ssh_config.host}")
    else:
        click.echo(f"{main_class} is not running on {ssh_config.host}")


@main.command()
@click.option("--prune", is_flag=True, help="Remove sessions whose debugger has exited")
def sessions(prune: bool) -> None:
    """List remote debug sessions started by pideploy."""
    registry = FileSessionRegistry()

    if prune:
        removed = registry.prune()
        click.echo(f"Pruned {len(removed)} stale session(s)")

    descriptors = registry.list_sessions()
    if not descriptors:
        click.echo("No debug sessions.")
        return

    table = Table(title="Debug Sessions")
    table.add_column("Name", style="cyan")
    table.add_column("PID", justify="right")
    table.add_column("Target")
    table.add_column("Status")
    table.add_column("Started")

    for descriptor in descriptors:
        handle = descriptor.ui_handle
        pid = str(getattr(handle, "pid", "-"))
        target = f"{handle.host}:{handle.port}" if getattr(handle, "host", None) else "-"
        status = "[green]attached[/green]" if descriptor.process_alive else "[red]exited[/red]"
        table.add_row(
            descriptor.session_name,
            pid,
            target,
            status,
            descriptor.started_at.strftime("%Y-%m-%d %H:%M:%S"),
        )

    Console().print(table)


@main.group()
def config() -> None:
    """Inspect or change saved settings (~/.pideploy/config.toml)."""


@config.command("show")
@click.pass_context
def config_show(ctx: click.Context) -> None:
    """Show the effective configuration."""
    settings = _load_config(ctx)

    table = Table(title=str(ConfigManager.get_config_path(ctx.obj.get("config_path"))))
    table.add_column("Key", style="cyan")
    table.add_column("Value")
    for key, value in asdict(PiDeployConfig()).items():
        current = getattr(settings, key)
        shown = "-" if current is None else str(current)
        if current != value:
            shown = f"[bold]{shown}[/bold]"
        table.add_row(key, shown)

    Console().print(table)


@config.command("set")
@click.argument("key")
@click.argument("value")
@click.pass_context
def config_set(ctx: click.Context, key: str, value: str) -> None:
    """Set KEY to VALUE, e.g. `pideploy config set hostname 192.168.1.5`."""
    try:
        ConfigManager.set_value(key, value, ctx.obj.get("config_path"))
    except ConfigError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    click.echo(f"{key} = {value}")


if __name__ == "__main__":
    main()
