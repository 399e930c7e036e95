"""CLI entrypoint for yona."""

from collections.abc import Callable
from typing import TypeVar

import rich_click as click

from yona import __version__
from yona.daemon.controllers import (
    ChatMessageCommand,
    DaemonCliController,
    OutputOptions,
    RunTaskCommand,
    TaskRefCommand,
)
from yona.daemon.errors import DaemonError

click.rich_click.USE_MARKDOWN = True
DAEMON_CONTROLLER = DaemonCliController()

T = TypeVar("T")


@click.group()
@click.version_option(version=__version__, prog_name="yona")
@click.option("--json", "as_json", is_flag=True, default=False, help="Print raw JSON responses.")
@click.option(
    "--session",
    default="default",
    show_default=True,
    help="Session that owns the task queue and chat conversation.",
)
@click.pass_context
def yona(ctx: click.Context, as_json: bool, session: str) -> None:
    """Session task daemon CLI."""

    ctx.obj = OutputOptions(session=session, as_json=as_json)


@yona.command("ping")
@click.pass_obj
def ping(options: OutputOptions) -> None:
    """Check that the daemon answers."""

    _emit_lines(_call(lambda: DAEMON_CONTROLLER.ping(options)))


@yona.command("run")
@click.argument("name")
@click.option(
    "--duration",
    "duration_ms",
    type=click.IntRange(min=1),
    default=None,
    help="Simulated work duration in milliseconds (daemon default when omitted).",
)
@click.pass_obj
def run(options: OutputOptions, name: str, duration_ms: int | None) -> None:
    """Queue a named task in the session."""

    _emit_lines(
        _call(
            lambda: DAEMON_CONTROLLER.run_task(
                options,
                RunTaskCommand(name=name, duration_ms=duration_ms),
            ),
        ),
    )


@yona.command("status")
@click.argument("task_id", required=False)
@click.pass_obj
def status(options: OutputOptions, task_id: str | None) -> None:
    """Show one task, or every task in the session."""

    _emit_lines(_call(lambda: DAEMON_CONTROLLER.status(options, TaskRefCommand(task_id=task_id))))


@yona.command("stop")
@click.argument("task_id", required=False)
@click.pass_obj
def stop(options: OutputOptions, task_id: str | None) -> None:
    """Cancel one task, or every unfinished task in the session."""

    _emit_lines(_call(lambda: DAEMON_CONTROLLER.stop(options, TaskRefCommand(task_id=task_id))))


@yona.group("session")
def session_group() -> None:
    """Session commands."""


@session_group.command("list")
@click.pass_obj
def session_list(options: OutputOptions) -> None:
    """List sessions with their task counts."""

    _emit_lines(_call(lambda: DAEMON_CONTROLLER.session_list(options)))


@yona.command("chat")
@click.argument("text")
@click.option("--model", default=None, help="Chat model override.")
@click.pass_obj
def chat(options: OutputOptions, text: str, model: str | None) -> None:
    """Send a chat message and print the reply."""

    _call(
        lambda: DAEMON_CONTROLLER.chat(
            options,
            ChatMessageCommand(text=text, model=model),
            click.echo,
        ),
    )


@yona.command("watch")
@click.option(
    "--max-events",
    type=click.IntRange(min=1),
    default=None,
    help="Exit after this many events.",
)
@click.pass_obj
def watch(options: OutputOptions, max_events: int | None) -> None:
    """Stream task, session, and chat events."""

    try:
        _call(lambda: DAEMON_CONTROLLER.watch(options, click.echo, max_events=max_events))
    except KeyboardInterrupt:
        pass


@yona.group("daemon")
def daemon_group() -> None:
    """Daemon process commands."""


@daemon_group.command("run")
def daemon_run() -> None:
    """Run the daemon in the foreground."""

    _call(DAEMON_CONTROLLER.run_daemon)


@daemon_group.command("status")
def daemon_status() -> None:
    """Show whether the daemon is running."""

    _emit_lines(_call(DAEMON_CONTROLLER.daemon_status))


@daemon_group.command("stop")
def daemon_stop() -> None:
    """Ask a running daemon to shut down."""

    _emit_lines(_call(DAEMON_CONTROLLER.stop_daemon))


def _call(action: Callable[[], T]) -> T:
    try:
        return action()
    except (DaemonError, ValueError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    yona()
