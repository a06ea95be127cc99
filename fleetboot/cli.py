"""``fleetboot`` console script.

Commands:
    prepare-infra       create missing instances, wait for readiness, record IPs
    install             install a component (go, app, node, app-service)
    deploy              prepare-infra, then install go, app and node
    bootstrap-network   generate keys, configs and genesis on validator nodes
    delete-all          delete every recorded instance of the project
    status              show provider status of recorded instances

``bootstrap-network`` is not idempotent: re-running it regenerates every
node-side key and config file.
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from collections.abc import Sequence
from pathlib import Path

from dotenv import load_dotenv
from loguru import logger
from rich.console import Console
from rich.table import Table

from fleetboot.config import load_config
from fleetboot.core.exceptions import FleetbootError
from fleetboot.fleet.installer import COMPONENTS, InstallReport
from fleetboot.manager import FleetManager
from fleetboot.observability.logging import LogConfig, setup_logging, teardown_logging

console = Console()
err_console = Console(stderr=True)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="fleetboot", description="Fleet provisioning and network bootstrap")
    parser.add_argument("--config", type=Path, default=None, help="Project config file (default: ./fleetboot.toml)")
    parser.add_argument(
        "--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"],
    )
    parser.add_argument("--log-file", type=str, default=None, help="Also write DEBUG logs to this file")

    sub = parser.add_subparsers(dest="command", required=True)

    prepare = sub.add_parser("prepare-infra", help="Create and wait for instances")
    prepare.add_argument("--timeout", type=float, default=None, help="Readiness timeout in seconds")

    install = sub.add_parser("install", help="Install a component on the fleet")
    install.add_argument("component", choices=list(COMPONENTS))
    install.add_argument("version", nargs="?", default=None, help="Version (default: from config; '' = latest)")

    deploy = sub.add_parser("deploy", help="prepare-infra, then install go, app and node")
    deploy.add_argument("--timeout", type=float, default=None)

    bootstrap = sub.add_parser("bootstrap-network", help="Bootstrap validator nodes into a network")
    bootstrap.add_argument("chain_id")
    bootstrap.add_argument("--seed", type=int, default=None, help="Key generator seed")

    sub.add_parser("delete-all", help="Delete every recorded instance")
    sub.add_parser("status", help="Show recorded instances")
    return parser


def _print_report(report: InstallReport) -> None:
    table = Table(title=f"install {report.action}")
    table.add_column("instance")
    table.add_column("address")
    table.add_column("result")
    styles = {"installed": "green", "skipped": "dim", "failed": "red"}
    for r in report.results:
        table.add_row(r.name, r.address, f"[{styles[r.outcome]}]{r.outcome}[/]")
    console.print(table)


async def _run(args: argparse.Namespace) -> None:
    config = load_config(project_path=args.config)
    async with FleetManager(config) as mgr:
        match args.command:
            case "prepare-infra":
                records = await mgr.prepare_infra(args.timeout)
                table = Table(title=f"project {config.api.project}")
                table.add_column("id", justify="right")
                table.add_column("name")
                table.add_column("public ip")
                for r in records:
                    table.add_row(str(r.id), r.name, r.public_ip)
                console.print(table)
            case "install":
                _print_report(await mgr.install(args.component, args.version))
            case "deploy":
                for report in await mgr.deploy(args.timeout):
                    _print_report(report)
            case "bootstrap-network":
                result = await mgr.bootstrap_network(args.chain_id, args.seed)
                table = Table(title=f"chain {result.chain_id}")
                table.add_column("validator")
                table.add_column("peer")
                for v in result.validators:
                    table.add_row(v.name, v.peer(config.network.p2p_port))
                console.print(table)
            case "delete-all":
                n = await mgr.delete_all()
                console.print(f"[green]Deleted {n} instance(s)[/]")
            case "status":
                table = Table(title=f"project {config.api.project}")
                table.add_column("id", justify="right")
                table.add_column("name")
                table.add_column("public ip")
                table.add_column("status")
                for report in await mgr.status():
                    r = report.record
                    table.add_row(str(r.id), r.name, r.public_ip, report.status)
                console.print(table)


def main(argv: Sequence[str] | None = None) -> int:
    load_dotenv()
    args = _build_parser().parse_args(argv)

    logger.remove()
    handler_ids = setup_logging(LogConfig(level=args.log_level, file=args.log_file))
    try:
        asyncio.run(_run(args))
    except FleetbootError as e:
        err_console.print(f"[bold red]error:[/] {e}")
        return 1
    except KeyboardInterrupt:
        err_console.print("[yellow]interrupted[/]")
        return 130
    finally:
        teardown_logging(handler_ids)
    return 0


if __name__ == "__main__":
    sys.exit(main())
