"""
budget_runtime/cli.py
Command-line entry point.

    budget-runtime start     run the supervisor (API child, then web child)
    budget-runtime stop      stop the instance recorded in the PID file
    budget-runtime status    report whether an instance is running
    budget-runtime api       run the API process (spawned by `start`)
"""

import argparse
import asyncio
import os
import shlex
import sys
from typing import List, Optional

from .core.config import Settings, reload_settings
from .core.logging import setup_logging
from .supervisor.health_gate import HealthGate
from .supervisor.pid_file import PidFile, stop_running_instance
from .supervisor.supervisor import ChildRole, ChildSpec, ProcessSupervisor


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="budget-runtime",
        description="Run the self-hosted budgeting app as a supervised API + web client pair.",
    )
    parser.add_argument("--app-dir", help="install root (default: $APP_DIR or the current directory)")
    parser.add_argument("--db-path", help="embedded database directory (default: <app-dir>/data/budget-local)")

    sub = parser.add_subparsers(dest="command", required=True)

    start = sub.add_parser("start", help="start the API and web client")
    start.add_argument("--no-browser", action="store_true", help="do not open a browser window")

    stop = sub.add_parser("stop", help="stop the running instance")
    stop.add_argument("--timeout", type=float, default=10.0, help="seconds to wait before force-killing")

    sub.add_parser("status", help="show whether an instance is running")
    sub.add_parser("api", help="run the API process in the foreground")
    return parser


def _apply_overrides(args: argparse.Namespace) -> Settings:
    # Exported so both children see the same configuration
    if args.app_dir:
        os.environ["APP_DIR"] = args.app_dir
    if args.db_path:
        os.environ["DB_PATH"] = args.db_path
    if getattr(args, "no_browser", False):
        os.environ["OPEN_BROWSER"] = "false"
    return reload_settings()


# ============================================================================
# Child specs
# ============================================================================

def api_child_spec(settings: Settings) -> ChildSpec:
    return ChildSpec(
        role=ChildRole.API,
        command=[sys.executable, "-m", "budget_runtime", "api"],
        env={
            "APP_DIR": str(settings.APP_DIR),
            "DB_PATH": str(settings.DB_PATH),
            "API_HOST": settings.API_HOST,
            "API_PORT": str(settings.API_PORT),
        },
        cwd=settings.APP_DIR,
    )


def web_child_spec(settings: Settings) -> ChildSpec:
    return ChildSpec(
        role=ChildRole.WEB,
        command=shlex.split(settings.WEB_COMMAND, posix=sys.platform != "win32"),
        env={
            "PORT": str(settings.WEB_PORT),
            "HOSTNAME": "localhost",
            "API_URL": f"http://{settings.API_HOST}:{settings.API_PORT}",
        },
        cwd=settings.APP_DIR,
    )


# ============================================================================
# Commands
# ============================================================================

def cmd_start(settings: Settings) -> int:
    logger = setup_logging("supervisor")
    logger.info(
        "supervisor_starting",
        version=settings.APP_VERSION,
        app_dir=str(settings.APP_DIR),
        db_path=str(settings.DB_PATH),
        api_port=settings.API_PORT,
        web_port=settings.WEB_PORT,
    )

    supervisor = ProcessSupervisor(
        max_restarts=settings.MAX_RESTARTS,
        restart_delay=settings.RESTART_DELAY,
        shutdown_grace=settings.SHUTDOWN_GRACE,
        health_gate=HealthGate(request_timeout=settings.HEALTH_REQUEST_TIMEOUT),
        pid_file=PidFile(settings.pid_file_path),
        browser_delay=settings.BROWSER_DELAY,
    )
    return asyncio.run(
        supervisor.run(
            api_child_spec(settings),
            web_child_spec(settings),
            health_url=settings.health_url,
            health_timeout=settings.HEALTH_TIMEOUT,
            health_interval=settings.HEALTH_INTERVAL,
            browser_url=settings.web_url if settings.OPEN_BROWSER else None,
        )
    )


def cmd_stop(settings: Settings, timeout: float) -> int:
    setup_logging("stop")
    stopped = stop_running_instance(PidFile(settings.pid_file_path), timeout=timeout)
    print("Stopped." if stopped else "Nothing to stop.")
    return 0


def cmd_status(settings: Settings) -> int:
    pid_file = PidFile(settings.pid_file_path)
    pid = pid_file.read()
    if pid is None or pid_file.is_stale():
        print("Not running.")
        return 1
    print(f"Running (pid {pid}) at {settings.web_url}")
    return 0


def cmd_api(settings: Settings) -> int:
    import uvicorn

    logger = setup_logging("api")
    logger.info("starting_server", host=settings.API_HOST, port=settings.API_PORT)
    uvicorn.run(
        "budget_runtime.api.main:create_app",
        factory=True,
        host=settings.API_HOST,
        port=settings.API_PORT,
        log_level=settings.LOG_LEVEL.lower(),
        log_config=None,
    )
    return 0


def main(argv: Optional[List[str]] = None) -> None:
    args = build_parser().parse_args(argv)
    settings = _apply_overrides(args)

    if args.command == "start":
        code = cmd_start(settings)
    elif args.command == "stop":
        code = cmd_stop(settings, args.timeout)
    elif args.command == "status":
        code = cmd_status(settings)
    else:
        code = cmd_api(settings)
    sys.exit(code)


if __name__ == "__main__":
    main()
