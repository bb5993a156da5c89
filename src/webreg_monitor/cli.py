"""
Command-line entry point: `webreg-monitor serve|jobs|genkey|mock-server`.
"""

import argparse
import logging
import sys
from typing import List, Optional

import uvicorn
from tabulate import tabulate

from . import mock_server
from .api import create_app
from .config import Settings
from .credentials import SecretBox
from .errors import ConfigurationError
from .manager import JobManager
from .storage import JsonJobStore

logger = logging.getLogger("webreg_monitor")


def setup_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    for noisy in ("httpx", "telegram", "aiohttp.access"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def cmd_serve(args: argparse.Namespace, settings: Settings) -> int:
    manager = JobManager.from_settings(settings)
    app = create_app(manager, resume=not args.no_resume)
    logger.info("Serving API on http://%s:%s (gateway %s)", args.host, args.port, settings.api_url)
    uvicorn.run(app, host=args.host, port=args.port, log_config=None)
    return 0


def cmd_jobs(args: argparse.Namespace, settings: Settings) -> int:
    store = JsonJobStore(settings.data_file)
    jobs = [job for job in store.load_jobs() if args.user is None or job.user_id == args.user]
    if not jobs:
        print("No jobs stored in", settings.data_file)
        return 0

    rows = []
    for job in sorted(jobs, key=lambda j: j.created_at):
        stats = job.stats.snapshot()
        rows.append(
            [
                job.id[:8],
                job.user_id,
                job.config.term,
                job.config.policy.mode,
                f"{len(job.enrolled)}/{len(job.enrolled) + len(job.pending_sections())}",
                stats.total_checks,
                stats.openings_found,
                stats.enrollment_attempts,
                stats.successful_enrollments,
                stats.errors,
                f"{stats.success_rate:.1f}%",
                "yes" if job.status.active else "no",
                job.status.last_check.strftime("%Y-%m-%d %H:%M:%S") if job.status.last_check else "-",
            ]
        )
    headers = [
        "Job", "User", "Term", "Mode", "Enrolled", "Checks", "Openings",
        "Attempts", "Successes", "Errors", "Rate", "Active", "Last check",
    ]
    print(tabulate(rows, headers=headers, tablefmt="github"))
    return 0


def cmd_genkey(args: argparse.Namespace, settings: Optional[Settings]) -> int:
    print(SecretBox.generate_key())
    return 0


def cmd_mock_server(args: argparse.Namespace, settings: Optional[Settings]) -> int:
    mock_server.run(host=args.host, port=args.port)
    return 0


def build_arg_parser() -> argparse.ArgumentParser:
    """Create and configure the argument parser."""
    parser = argparse.ArgumentParser(
        prog="webreg-monitor", description="Multi-user course seat monitor and auto-enroller"
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    parser.add_argument("--env-file", default=None, help="Read settings from this .env file")
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the HTTP API and the job workers")
    serve.add_argument("--host", default="127.0.0.1", help="Bind address (default 127.0.0.1)")
    serve.add_argument("--port", type=int, default=8080, help="Port (default 8080)")
    serve.add_argument(
        "--no-resume", action="store_true", help="Do not restart jobs that were running"
    )
    serve.set_defaults(func=cmd_serve)

    jobs = sub.add_parser("jobs", help="Show stored jobs and their statistics")
    jobs.add_argument("--user", default=None, help="Only show this user's jobs")
    jobs.set_defaults(func=cmd_jobs)

    genkey = sub.add_parser("genkey", help="Print a fresh ENCRYPTION_KEY")
    genkey.set_defaults(func=cmd_genkey, needs_settings=False)

    mock = sub.add_parser("mock-server", help="Run the mock registration gateway")
    mock.add_argument("--host", default="127.0.0.1", help="Bind address (default 127.0.0.1)")
    mock.add_argument("--port", type=int, default=8000, help="Port (default 8000)")
    mock.set_defaults(func=cmd_mock_server, needs_settings=False)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    setup_logging(args.verbose)

    settings = None
    try:
        if getattr(args, "needs_settings", True):
            settings = Settings.from_env(args.env_file)
        return args.func(args, settings)
    except ConfigurationError as e:
        logger.error("Configuration error: %s", e)
        return 2
    except KeyboardInterrupt:
        logger.info("Shutting down…")
        return 0


if __name__ == "__main__":
    sys.exit(main())
