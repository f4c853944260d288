"""Command-line entry point.

Groups come from tsunami.toml. Setup and workload are lists of shell
commands run on every machine of the group; setup commands must exit 0.

    $ tsunami groups
    $ tsunami run -c tsunami.toml --log-level DEBUG
"""

from __future__ import annotations

import argparse
import asyncio
from collections.abc import Sequence
from pathlib import Path

from loguru import logger
from rich.console import Console
from rich.table import Table

from tsunami.config import GroupConfig, RunConfig, resolve_run
from tsunami.exceptions import ConfigurationError, TsunamiError
from tsunami.facade import Tsunami
from tsunami.fleet import Fleet
from tsunami.logging import LogConfig
from tsunami.spec import MachineTemplate, SetupRoutine
from tsunami.transport.base import Session

log = logger.bind(component="cli")

console = Console()


def command_setup(group: str, commands: Sequence[str]) -> SetupRoutine:
    """Setup routine that runs ``commands`` in order, failing on non-zero exit."""

    async def setup(session: Session) -> None:
        for command in commands:
            output = await session.run(command, check=True)
            log.info("{group} $ {cmd}\n{out}", group=group, cmd=command, out=output.rstrip())

    return setup


def fleet_table(fleet: Fleet) -> Table:
    table = Table(title="Fleet")
    table.add_column("Group", style="bold cyan")
    table.add_column("Instance")
    table.add_column("Type")
    table.add_column("Private IP")
    table.add_column("Public address")
    for group, machine in fleet.machines():
        table.add_row(
            group,
            machine.instance_id,
            machine.instance_type,
            machine.private_ip,
            machine.public_address,
        )
    return table


def build_tsunami(config: RunConfig, log_config: LogConfig | bool = False) -> Tsunami:
    tsunami = Tsunami(provider=config.provider, settings=config.settings, logging=log_config)
    for group in config.groups:
        tsunami.add_group(
            group.name,
            group.count,
            MachineTemplate(
                instance_type=group.instance_type,
                image_id=group.ami,
                key_name=group.key_name,
                setup=command_setup(group.name, group.setup),
            ),
        )
    if config.max_duration_hours is not None:
        tsunami.set_max_duration(config.max_duration_hours)
    return tsunami


def make_workload(groups: Sequence[GroupConfig]):
    async def workload(fleet: Fleet) -> None:
        console.print(fleet_table(fleet))
        for group in groups:
            for machine in fleet[group.name]:
                for command in group.workload:
                    output = await machine.run(command, check=True)
                    console.print(f"[bold cyan]{group.name}[/] {machine.instance_id} $ {command}")
                    console.print(output.rstrip(), markup=False, highlight=False)

    return workload


def _cmd_groups(config: RunConfig) -> int:
    table = Table(title="Configured groups")
    table.add_column("Group", style="bold cyan")
    table.add_column("Count", justify="right")
    table.add_column("Type")
    table.add_column("AMI")
    table.add_column("Key")
    table.add_column("Setup", justify="right")
    for group in config.groups:
        table.add_row(
            group.name,
            str(group.count),
            group.instance_type,
            group.ami,
            group.key_name,
            str(len(group.setup)),
        )
    console.print(table)
    return 0


def _cmd_run(config: RunConfig, args: argparse.Namespace) -> int:
    log_config = LogConfig(level=args.log_level, file=args.log_file)
    tsunami = build_tsunami(config, log_config)
    try:
        asyncio.run(tsunami.run(make_workload(config.groups)))
    except TsunamiError as e:
        console.print(f"[bold red]Run failed:[/] {e}", highlight=False)
        for note in getattr(e, "__notes__", ()):
            console.print(f"  {note}", style="dim", highlight=False)
        return 1
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tsunami",
        description="Launch a fleet, configure it over SSH, run a workload, tear it down.",
    )
    parser.add_argument(
        "-c", "--config", type=Path, default=None,
        help="Project config file (default: ./tsunami.toml)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Run the configured fleet")
    run.add_argument(
        "--log-level", default="INFO",
        choices=["TRACE", "DEBUG", "INFO", "WARNING", "ERROR"],
    )
    run.add_argument("--log-file", default=None, help="Also write DEBUG logs to this file")

    sub.add_parser("groups", help="List configured groups")
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        config = resolve_run(config_path=args.config)
    except ConfigurationError as e:
        console.print(f"[bold red]Configuration error:[/] {e}", highlight=False)
        return 2

    match args.command:
        case "groups":
            return _cmd_groups(config)
        case "run":
            return _cmd_run(config, args)
    return 2
