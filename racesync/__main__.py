"""CLI entry point for racesync."""

import argparse
import asyncio
import json
import sys
from pathlib import Path

from .api_client import COMMAND, QUERY
from .config import load_config
from .engine import SyncEngine
from .errors import SyncError
from .logs import LEVELS, setup_logging
from .models import Distance, Role
from .mutations import MutationOutcome


def _print_error(error: SyncError) -> None:
    prefix = "Warning" if error.tone.value == "warning" else "Error"
    print(f"{prefix}: {error.message}", file=sys.stderr)


def _print_races(engine: SyncEngine) -> None:
    races = engine.races.list()
    if not races:
        print("No races.")
        return
    for race in races:
        print(f"{race.name} - {race.distance}  [{race.id}]")


def _print_applications(engine: SyncEngine) -> None:
    applications = engine.applications.list()
    if not applications:
        print("No applications.")
        return
    for application in applications:
        print(f"{engine.describe_application(application)}  [{application.id}]")


async def _open_engine(args: argparse.Namespace) -> SyncEngine:
    config = load_config(args.config)
    engine = SyncEngine(config)
    await engine.login(args.email, args.role)
    return engine


async def _run(args: argparse.Namespace, action) -> int:
    """Log in, run ``action`` and report classified failures."""
    try:
        engine = await _open_engine(args)
    except SyncError as e:
        _print_error(e)
        return 1

    try:
        return await action(engine)
    except SyncError as e:
        _print_error(e)
        return 1
    finally:
        await engine.close()


async def _finish(engine: SyncEngine, outcome: MutationOutcome, show) -> int:
    if not outcome.ok:
        _print_error(outcome.error)
        return 1
    await engine.settle()
    show(engine)
    return 0


async def cmd_races(args: argparse.Namespace) -> int:
    """List races."""

    async def action(engine: SyncEngine) -> int:
        error = engine.scheduler.last_error("races")
        if error:
            _print_error(error)
            return 1
        _print_races(engine)
        return 0

    return await _run(args, action)


async def cmd_create_race(args: argparse.Namespace) -> int:
    """Create a race."""

    async def action(engine: SyncEngine) -> int:
        outcome = await engine.mutations.create_race(args.name, args.distance)
        return await _finish(engine, outcome, _print_races)

    return await _run(args, action)


async def cmd_rename_race(args: argparse.Namespace) -> int:
    """Rename a race."""

    async def action(engine: SyncEngine) -> int:
        outcome = await engine.mutations.update_race(args.race_id, name=args.name)
        return await _finish(engine, outcome, _print_races)

    return await _run(args, action)


async def cmd_delete_race(args: argparse.Namespace) -> int:
    """Delete a race."""

    async def action(engine: SyncEngine) -> int:
        outcome = await engine.mutations.delete_race(args.race_id)
        return await _finish(engine, outcome, _print_races)

    return await _run(args, action)


async def cmd_apply(args: argparse.Namespace) -> int:
    """Apply for a race and wait for the application to be verified."""

    async def action(engine: SyncEngine) -> int:
        outcome = await engine.mutations.register(
            args.race_id, args.first_name, args.last_name, club=args.club
        )
        if not outcome.ok:
            _print_error(outcome.error)
            return 1
        print(f"Registered: {engine.describe_application(outcome.entity)}")
        return 0

    return await _run(args, action)


async def cmd_applications(args: argparse.Namespace) -> int:
    """List the caller's applications."""

    async def action(engine: SyncEngine) -> int:
        error = engine.scheduler.last_error("applications")
        if error:
            _print_error(error)
            return 1
        _print_applications(engine)
        return 0

    return await _run(args, action)


async def cmd_withdraw(args: argparse.Namespace) -> int:
    """Delete an application."""

    async def action(engine: SyncEngine) -> int:
        outcome = await engine.mutations.delete_application(args.application_id)
        return await _finish(engine, outcome, _print_applications)

    return await _run(args, action)


async def cmd_status(args: argparse.Namespace) -> int:
    """Check connectivity status."""
    config = load_config(args.config)
    engine = SyncEngine(config)

    status = {
        "query_url": config.api.query_url,
        "query_reachable": await engine.api.check_connection(QUERY),
        "command_url": config.api.command_url,
        "command_reachable": await engine.api.check_connection(COMMAND),
        "email": args.email or config.auth.email,
        "role": args.role or config.auth.role,
    }

    if args.json_status:
        print(json.dumps(status, indent=2))
    else:
        print(f"Query service:   {status['query_url']} "
              f"({'reachable' if status['query_reachable'] else 'unreachable'})")
        print(f"Command service: {status['command_url']} "
              f"({'reachable' if status['command_reachable'] else 'unreachable'})")
        print(f"Credential:      {status['email']} ({status['role']})")

    return 0 if status["query_reachable"] and status["command_reachable"] else 1


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog="racesync",
        description="Optimistic client for the race registration services",
    )
    parser.add_argument(
        "-c", "--config",
        type=Path,
        default=None,
        help="Path to config file (default: built-in defaults)",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        choices=list(LEVELS),
        default=None,
        help="Set log level explicitly (overrides -v/--verbose)",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Output logs as JSON for machine parsing",
    )
    parser.add_argument(
        "--email",
        type=str,
        default=None,
        help="Log in as this email (default: from config)",
    )
    parser.add_argument(
        "--role",
        type=str,
        choices=[r.value for r in Role],
        default=None,
        help="Log in with this role (default: from config)",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    races_parser = subparsers.add_parser("races", help="List races")
    races_parser.set_defaults(func=cmd_races)

    create_parser = subparsers.add_parser("create-race", help="Create a race")
    create_parser.add_argument("name", help="Race name")
    create_parser.add_argument("distance", choices=Distance.values(), help="Race distance")
    create_parser.set_defaults(func=cmd_create_race)

    rename_parser = subparsers.add_parser("rename-race", help="Rename a race")
    rename_parser.add_argument("race_id", help="Race id")
    rename_parser.add_argument("name", help="New race name")
    rename_parser.set_defaults(func=cmd_rename_race)

    delete_parser = subparsers.add_parser("delete-race", help="Delete a race")
    delete_parser.add_argument("race_id", help="Race id")
    delete_parser.set_defaults(func=cmd_delete_race)

    apply_parser = subparsers.add_parser("apply", help="Apply for a race")
    apply_parser.add_argument("race_id", help="Race id")
    apply_parser.add_argument("first_name", help="First name")
    apply_parser.add_argument("last_name", help="Last name")
    apply_parser.add_argument("--club", type=str, default=None, help="Club (optional)")
    apply_parser.set_defaults(func=cmd_apply)

    applications_parser = subparsers.add_parser("applications", help="List your applications")
    applications_parser.set_defaults(func=cmd_applications)

    withdraw_parser = subparsers.add_parser("withdraw", help="Delete an application")
    withdraw_parser.add_argument("application_id", help="Application id")
    withdraw_parser.set_defaults(func=cmd_withdraw)

    status_parser = subparsers.add_parser("status", help="Check connectivity status")
    status_parser.add_argument(
        "--json",
        dest="json_status",
        action="store_true",
        help="Output status as JSON",
    )
    status_parser.set_defaults(func=cmd_status)

    args = parser.parse_args()

    setup_logging(args.verbose, args.log_level, args.json)

    if not args.command:
        parser.print_help()
        return 1

    try:
        return asyncio.run(args.func(args))
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
