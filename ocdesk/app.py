"""ocdesk entry point: argument parsing, logging setup and mode dispatch."""
from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

import yaml

from ocdesk.adapters.desk import DeskClient
from ocdesk.engine.config import ClientConfig
from ocdesk.engine.errors import ConfigError
from ocdesk.engine.yaml_config import (
    DeskConfig,
    ProjectEntry,
    load_default_config,
    load_yaml_config,
)
from ocdesk.shared.services.preferences import UserPreferences

LOG_DIR = Path.home() / ".ocdesk" / "logs"


def setup_logging(level: str, console: bool = True, log_dir: Path = LOG_DIR) -> Path:
    """Send records to a rotating file and, outside the TUI, to stderr."""
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "ocdesk.log"

    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers.clear()
    formatter = logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"
    )
    file_handler = RotatingFileHandler(
        log_file, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    root.addHandler(file_handler)
    if console:
        stream_handler = logging.StreamHandler(sys.stderr)
        stream_handler.setFormatter(formatter)
        root.addHandler(stream_handler)
    return log_file


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ocdesk",
        description="One desk for several agent-server projects.",
    )
    parser.add_argument(
        "--config", metavar="PATH",
        help="YAML config file (default: ~/.ocdesk/config.yaml if present)",
    )
    parser.add_argument(
        "--project", "-p", action="append", default=[], metavar="DIR",
        help="Project directory to open (repeatable)",
    )
    parser.add_argument(
        "--server-url", metavar="URL",
        help="Server URL for projects that do not name one",
    )
    parser.add_argument(
        "--no-local-server", action="store_true",
        help="Do not start a local server when none is running",
    )
    parser.add_argument(
        "--log-level", metavar="LEVEL",
        help="Logging level (default: OCDESK_LOG_LEVEL or INFO)",
    )
    parser.add_argument(
        "--check", action="store_true",
        help="Connect every project, print link status and exit",
    )
    return parser


def resolve_config(args: argparse.Namespace) -> DeskConfig:
    """Environment, then the YAML file, then command-line flags."""
    base = ClientConfig.from_env()
    if args.config:
        desk_config = load_yaml_config(args.config, base)
    else:
        desk_config = load_default_config(base)
    client = desk_config.client
    if args.server_url:
        client.server_url = args.server_url
    if args.no_local_server:
        client.start_local_server = False
    if args.log_level:
        client.log_level = args.log_level
    known = {p.directory for p in desk_config.projects}
    for directory in args.project:
        resolved = str(Path(directory).expanduser().resolve())
        if resolved not in known:
            desk_config.projects.append(ProjectEntry(directory=resolved))
            known.add(resolved)
    return desk_config


async def run_check(desk: DeskClient, projects: list[ProjectEntry]) -> int:
    """Headless connect-and-report. Returns the process exit code."""
    failures = 0
    try:
        if not await desk.boot():
            print(f"server: {desk.state.boot_error}")
            return 1
        for project in projects:
            connection = project.connection(desk.config)
            result = await desk.add_project(
                connection.directory,
                server_url=connection.base_url,
                username=connection.username,
                password=connection.password,
            )
            if result.success:
                count = sum(
                    1 for s in desk.state.snapshot().sessions
                    if s.directory == connection.directory
                )
                print(
                    f"{connection.directory}: connected "
                    f"(server {result.data['server_version']}, {count} conversation(s))"
                )
            else:
                failures += 1
                print(f"{connection.directory}: {result.error}")
    finally:
        await desk.aclose()
    return 1 if failures else 0


def main() -> None:
    args = build_parser().parse_args()
    try:
        desk_config = resolve_config(args)
    except (ConfigError, OSError, ValueError, yaml.YAMLError) as exc:
        print(f"ocdesk: {exc}", file=sys.stderr)
        sys.exit(2)

    client = desk_config.client
    log_file = setup_logging(client.log_level, console=args.check)
    logging.getLogger(__name__).info(
        "Starting ocdesk cwd=%s server=%s projects=%d log=%s",
        Path.cwd(), client.server_url, len(desk_config.projects), log_file,
    )

    preferences = UserPreferences.load()
    projects = list(desk_config.projects)
    known = {p.directory for p in projects}
    for directory in preferences.open_projects:
        if directory not in known:
            projects.append(ProjectEntry(directory=directory))

    desk = DeskClient(client, preferences=preferences)
    if args.check:
        sys.exit(asyncio.run(run_check(desk, projects)))

    from ocdesk.tui.app import DeskApp

    DeskApp(desk, projects).run()


if __name__ == "__main__":
    main()
