"""CLI entrypoint for team-bridge."""

import logging
from collections.abc import Callable
from pathlib import Path
from typing import Any, TypeVar

import rich_click as click

from team_bridge import __version__
from team_bridge.coordination.audit import ActivityCategory
from team_bridge.coordination.controllers import (
    AuditRotateCommand,
    AuditShowCommand,
    AuditTimelineCommand,
    LeadHealthCommand,
    LeadPollCommand,
    LeadReportCommand,
    LeadSendCommand,
    LeadSignalCommand,
    LeadStatusCommand,
    LeadUsageCommand,
    RestartCommand,
    TaskCreateCommand,
    TaskListCommand,
    TaskShowCommand,
    TeamBridgeCliController,
    WorkerRegisterCommand,
    WorkerRunCommand,
    WorkerUnregisterCommand,
)
from team_bridge.coordination.fsutils import TeamBridgeError
from team_bridge.coordination.models import AuditEventType, InboxMessageType, TaskOutcome

click.rich_click.USE_MARKDOWN = True
CONTROLLER = TeamBridgeCliController()

CommandT = TypeVar("CommandT")
F = TypeVar("F", bound=Callable[..., Any])


def _team_options(func: F) -> F:
    func = click.option(
        "--team",
        default=None,
        help="Team name. Defaults to TEAM_BRIDGE_TEAM or `default`.",
    )(func)
    return click.option(
        "--root",
        type=click.Path(path_type=Path),
        default=None,
        help="Shared coordination root. Defaults to TEAM_BRIDGE_ROOT or `.team-bridge`.",
    )(func)


@click.group()
@click.version_option(version=__version__, prog_name="team-bridge")
@click.option(
    "--log-level",
    type=click.Choice(["debug", "info", "warning", "error"], case_sensitive=False),
    default="warning",
    show_default=True,
    help="Logging verbosity for coordination messages.",
)
def team_bridge(log_level: str) -> None:
    """File-based team coordination: one lead, many workers, one shared directory."""

    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@team_bridge.group()
def task() -> None:
    """Task store commands."""


@task.command("create")
@_team_options
@click.argument("task_id")
@click.option("--subject", required=True, help="Short task title.")
@click.option("--description", default="", help="Task body passed to the worker command.")
@click.option("--owner", default="", help="Assign directly to a worker instead of the lead.")
@click.option(
    "--blocked-by",
    "blocked_by",
    multiple=True,
    help="Id of a task that must complete first. Can be repeated.",
)
def task_create(  # noqa: PLR0913
    root: Path | None,
    team: str | None,
    task_id: str,
    subject: str,
    description: str,
    owner: str,
    blocked_by: tuple[str, ...],
) -> None:
    """Create a pending task."""

    _invoke(
        CONTROLLER.create_task,
        TaskCreateCommand(
            root=root,
            team=team,
            task_id=task_id,
            subject=subject,
            description=description,
            owner=owner,
            blocked_by=blocked_by,
        ),
    )


@task.command("list")
@_team_options
@click.option(
    "--outcome",
    type=click.Choice([outcome.value for outcome in TaskOutcome], case_sensitive=False),
    default=None,
    help="Only show tasks with this outcome.",
)
@click.option("--owner", default=None, help="Only show tasks owned by this worker.")
def task_list(
    root: Path | None,
    team: str | None,
    outcome: str | None,
    owner: str | None,
) -> None:
    """List tasks in id order."""

    _invoke(
        CONTROLLER.list_tasks,
        TaskListCommand(root=root, team=team, outcome=outcome, owner=owner),
    )


@task.command("show")
@_team_options
@click.argument("task_id")
def task_show(root: Path | None, team: str | None, task_id: str) -> None:
    """Show one task with its retry state."""

    _invoke(CONTROLLER.show_task, TaskShowCommand(root=root, team=team, task_id=task_id))


@team_bridge.group()
def worker() -> None:
    """Worker membership and execution."""


@worker.command("register")
@_team_options
@click.argument("name")
@click.option(
    "--command",
    "start_command",
    default="",
    help="Shell command the lead runs to (re)start this worker.",
)
def worker_register(
    root: Path | None,
    team: str | None,
    name: str,
    start_command: str,
) -> None:
    """Add a worker to the team registry."""

    _invoke(
        CONTROLLER.register_worker,
        WorkerRegisterCommand(root=root, team=team, name=name, command=start_command),
    )


@worker.command("unregister")
@_team_options
@click.argument("name")
@click.option(
    "--cleanup/--no-cleanup",
    default=False,
    show_default=True,
    help="Also delete the worker's inbox, outbox, cursors and signals.",
)
def worker_unregister(root: Path | None, team: str | None, name: str, cleanup: bool) -> None:
    """Remove a worker from the team registry."""

    _invoke(
        CONTROLLER.unregister_worker,
        WorkerUnregisterCommand(root=root, team=team, name=name, cleanup=cleanup),
    )


@worker.command("run")
@_team_options
@click.argument("name")
@click.option(
    "--command",
    "command_template",
    default=None,
    help=(
        "Command template run per task, e.g. `my-agent --prompt-file {prompt_file}`. "
        "Defaults to TEAM_BRIDGE_WORKER_COMMAND."
    ),
)
@click.option("--once", is_flag=True, default=False, help="Process at most one task.")
@click.option(
    "--max-tasks",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after this many processed tasks in loop mode.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after this many consecutive polls without work.",
)
def worker_run(  # noqa: PLR0913
    root: Path | None,
    team: str | None,
    name: str,
    command_template: str | None,
    once: bool,
    max_tasks: int | None,
    max_idle_polls: int | None,
) -> None:
    """Run the worker poll loop."""

    _invoke(
        CONTROLLER.run_worker,
        WorkerRunCommand(
            root=root,
            team=team,
            name=name,
            command_template=command_template,
            once=once,
            max_tasks=max_tasks,
            max_idle_polls=max_idle_polls,
        ),
    )


@team_bridge.group()
def lead() -> None:
    """Lead commands: dispatch, supervise and talk to workers."""


@lead.command("poll")
@_team_options
@click.option("--once", is_flag=True, default=False, help="Run a single lead cycle.")
@click.option(
    "--max-cycles",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after this many cycles in loop mode.",
)
def lead_poll(
    root: Path | None,
    team: str | None,
    once: bool,
    max_cycles: int | None,
) -> None:
    """Run the lead poll loop."""

    _invoke(
        CONTROLLER.lead_poll,
        LeadPollCommand(root=root, team=team, once=once, max_cycles=max_cycles),
    )


@lead.command("status")
@_team_options
@click.option(
    "--recent",
    type=click.IntRange(min=0, max=50),
    default=3,
    show_default=True,
    help="Recent outbox messages to show per worker.",
)
def lead_status(root: Path | None, team: str | None, recent: int) -> None:
    """Show workers, liveness and task counts."""

    _invoke(CONTROLLER.status, LeadStatusCommand(root=root, team=team, recent=recent))


@lead.command("health")
@_team_options
def lead_health(root: Path | None, team: str | None) -> None:
    """Show per-worker health and anything needing attention."""

    _invoke(CONTROLLER.health, LeadHealthCommand(root=root, team=team))


@lead.command("report")
@_team_options
@click.option(
    "--output",
    "output_dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Directory for the report file. Defaults to `<root>/reports/<team>`.",
)
@click.option(
    "--print",
    "print_only",
    is_flag=True,
    default=False,
    help="Print the report instead of saving it.",
)
def lead_report(
    root: Path | None,
    team: str | None,
    output_dir: Path | None,
    print_only: bool,
) -> None:
    """Write a markdown team report built from the audit and usage logs."""

    _invoke(
        CONTROLLER.report,
        LeadReportCommand(root=root, team=team, output_dir=output_dir, print_only=print_only),
    )


@lead.command("usage")
@_team_options
def lead_usage(root: Path | None, team: str | None) -> None:
    """Show recorded per-task usage, overall and per worker."""

    _invoke(CONTROLLER.usage, LeadUsageCommand(root=root, team=team))


@lead.command("send")
@_team_options
@click.argument("worker_name")
@click.argument("content")
@click.option(
    "--type",
    "message_type",
    type=click.Choice([kind.value for kind in InboxMessageType], case_sensitive=False),
    default=InboxMessageType.MESSAGE.value,
    show_default=True,
    help="`context` messages are prepended to the next task prompt.",
)
def lead_send(  # noqa: PLR0913
    root: Path | None,
    team: str | None,
    worker_name: str,
    content: str,
    message_type: str,
) -> None:
    """Append a message to a worker inbox."""

    _invoke(
        CONTROLLER.send,
        LeadSendCommand(
            root=root,
            team=team,
            worker=worker_name,
            content=content,
            message_type=message_type,
        ),
    )


@lead.command("shutdown")
@_team_options
@click.argument("worker_name")
@click.option("--reason", default="", help="Reason recorded in the signal file.")
def lead_shutdown(root: Path | None, team: str | None, worker_name: str, reason: str) -> None:
    """Ask a worker to stop now, interrupting its current task."""

    _invoke(
        CONTROLLER.shutdown,
        LeadSignalCommand(root=root, team=team, worker=worker_name, reason=reason),
    )


@lead.command("drain")
@_team_options
@click.argument("worker_name")
@click.option("--reason", default="", help="Reason recorded in the signal file.")
def lead_drain(root: Path | None, team: str | None, worker_name: str, reason: str) -> None:
    """Ask a worker to finish its current task and then stop."""

    _invoke(
        CONTROLLER.drain,
        LeadSignalCommand(root=root, team=team, worker=worker_name, reason=reason),
    )


@team_bridge.group()
def audit() -> None:
    """Audit log commands."""


@audit.command("show")
@_team_options
@click.option(
    "--event-type",
    type=click.Choice([event.value for event in AuditEventType], case_sensitive=False),
    default=None,
    help="Only show this event type.",
)
@click.option("--worker", "worker_name", default=None, help="Only show events by this actor.")
@click.option(
    "--hours",
    type=click.IntRange(min=1),
    default=None,
    help="Only show events from the last N hours.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=10000),
    default=50,
    show_default=True,
    help="Newest events to print.",
)
def audit_show(  # noqa: PLR0913
    root: Path | None,
    team: str | None,
    event_type: str | None,
    worker_name: str | None,
    hours: int | None,
    limit: int,
) -> None:
    """Print raw audit events."""

    _invoke(
        CONTROLLER.audit_show,
        AuditShowCommand(
            root=root,
            team=team,
            event_type=event_type,
            worker=worker_name,
            hours=hours,
            limit=limit,
        ),
    )


@audit.command("timeline")
@_team_options
@click.option("--worker", "worker_name", default=None, help="Only show this actor.")
@click.option(
    "--category",
    type=click.Choice([category.value for category in ActivityCategory], case_sensitive=False),
    default=None,
    help="Only show one activity category.",
)
@click.option(
    "--hours",
    type=click.IntRange(min=1),
    default=None,
    help="Only show activity from the last N hours.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=10000),
    default=50,
    show_default=True,
    help="Newest entries to print.",
)
def audit_timeline(  # noqa: PLR0913
    root: Path | None,
    team: str | None,
    worker_name: str | None,
    category: str | None,
    hours: int | None,
    limit: int,
) -> None:
    """Print a human-readable activity timeline."""

    _invoke(
        CONTROLLER.audit_timeline,
        AuditTimelineCommand(
            root=root,
            team=team,
            worker=worker_name,
            category=category,
            hours=hours,
            limit=limit,
        ),
    )


@audit.command("rotate")
@_team_options
@click.option(
    "--max-bytes",
    type=click.IntRange(min=1),
    default=None,
    help="Rotation threshold. Defaults to TEAM_BRIDGE_AUDIT_MAX_BYTES.",
)
def audit_rotate(root: Path | None, team: str | None, max_bytes: int | None) -> None:
    """Keep the newest half of the audit log once it exceeds the threshold."""

    _invoke(
        CONTROLLER.audit_rotate,
        AuditRotateCommand(root=root, team=team, max_bytes=max_bytes),
    )


@team_bridge.group()
def restart() -> None:
    """Worker restart budget commands."""


@restart.command("status")
@_team_options
@click.argument("worker_name", required=False)
def restart_status(root: Path | None, team: str | None, worker_name: str | None) -> None:
    """Show restart counts and the next backoff per worker."""

    _invoke(
        CONTROLLER.restart_status,
        RestartCommand(root=root, team=team, worker=worker_name),
    )


@restart.command("clear")
@_team_options
@click.argument("worker_name")
def restart_clear(root: Path | None, team: str | None, worker_name: str) -> None:
    """Reset a worker's restart budget."""

    _invoke(
        CONTROLLER.restart_clear,
        RestartCommand(root=root, team=team, worker=worker_name),
    )


def _invoke(action: Callable[[CommandT], list[str]], command: CommandT) -> None:
    try:
        lines = action(command)
    except (TeamBridgeError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    team_bridge()
