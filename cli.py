#!/usr/bin/env python3
"""
Command-line interface for the TableMaster notification service.

Usage:
    python cli.py [command] [options]

Commands:
    serve       Start the API server
    token       Issue or inspect signed action tokens
    quota       Show or reset a restaurant's monthly quota
    test        Run the test suite

Examples:
    python cli.py token issue password-reset --user-id user-001
    python cli.py token issue reservation-cancel --reservation-id R1 --restaurant-id rest-001
    python cli.py token inspect eyJhbGciOi...
    python cli.py quota usage rest-001
    python cli.py serve --reload

The signing secret is read from TABLEMASTER_JWT_SECRET.
"""

import argparse
import json
import subprocess
import sys
from dataclasses import asdict
from datetime import timedelta

from admission.quota import QuotaTracker
from core.config import load_settings
from core.data_store import DataStore
from core.errors import ServiceError
from security.tokens import PasswordResetClaims, ReservationCancelClaims, TokenService


def _token_service() -> TokenService:
    # Token commands never send anything, so channel credentials are not needed
    settings = load_settings(email_enabled=False, push_enabled=False)
    return TokenService.from_settings(settings)


def run_token_issue(args: argparse.Namespace) -> None:
    """Issue a token and print it."""
    if args.kind == "password-reset":
        if not args.user_id:
            print("--user-id is required for password-reset tokens")
            sys.exit(2)
        claims = PasswordResetClaims(user_id=args.user_id)
    else:
        if not (args.reservation_id and args.restaurant_id):
            print("--reservation-id and --restaurant-id are required for reservation-cancel tokens")
            sys.exit(2)
        claims = ReservationCancelClaims(reservation_id=args.reservation_id, restaurant_id=args.restaurant_id)

    ttl = timedelta(hours=args.ttl_hours) if args.ttl_hours is not None else None
    print(_token_service().issue(claims, ttl=ttl))


def run_token_inspect(token: str) -> None:
    """Validate a token of any kind and print its claims."""
    claims = _token_service().inspect(token)
    print(json.dumps({"type": claims.kind.value, **asdict(claims)}, indent=2))


def run_quota(action: str, tenant_id: str) -> None:
    """Show or reset quota usage for a restaurant from the seed data."""
    settings = load_settings(email_enabled=False, push_enabled=False)
    tracker = QuotaTracker(data_store=DataStore(), starter_limit=settings.starter_quota_limit)
    usage = tracker.reset_period(tenant_id) if action == "reset" else tracker.get_usage(tenant_id)
    print(json.dumps(usage.model_dump(), indent=2))


def run_tests(args: list[str]) -> None:
    """Run the test suite."""
    cmd = [sys.executable, "-m", "pytest"] + args
    subprocess.run(cmd)


def run_server(host: str, port: int, reload: bool) -> None:
    """Start the API server."""
    cmd = [sys.executable, "-m", "uvicorn", "api.main:app", f"--host={host}", f"--port={port}"]
    if reload:
        cmd.append("--reload")

    print(f"Starting server at http://{host}:{port}")
    print(f"API docs available at http://{host}:{port}/docs")
    subprocess.run(cmd)


def main() -> None:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="TableMaster Notification Service CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s token issue password-reset --user-id user-001
  %(prog)s token inspect <token>
  %(prog)s quota usage rest-001
  %(prog)s quota reset rest-001
  %(prog)s test -v
  %(prog)s serve --reload
        """,
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # Token commands
    token_parser = subparsers.add_parser("token", help="Issue or inspect tokens")
    token_sub = token_parser.add_subparsers(dest="token_command")

    issue_parser = token_sub.add_parser("issue", help="Issue a signed token")
    issue_parser.add_argument(
        "kind",
        choices=["password-reset", "reservation-cancel"],
        help="Which kind of token to issue",
    )
    issue_parser.add_argument("--user-id", help="User id (password-reset)")
    issue_parser.add_argument("--reservation-id", help="Reservation id (reservation-cancel)")
    issue_parser.add_argument("--restaurant-id", help="Restaurant id (reservation-cancel)")
    issue_parser.add_argument("--ttl-hours", type=float, default=None, help="Override the default lifetime")

    inspect_parser = token_sub.add_parser("inspect", help="Validate a token and show its claims")
    inspect_parser.add_argument("token", help="The token string")

    # Quota command
    quota_parser = subparsers.add_parser("quota", help="Show or reset quota usage")
    quota_parser.add_argument("action", choices=["usage", "reset"], help="What to do")
    quota_parser.add_argument("tenant_id", help="Restaurant id")

    # Test command
    test_parser = subparsers.add_parser("test", help="Run the test suite")
    test_parser.add_argument(
        "pytest_args",
        nargs="*",
        default=[],
        help="Arguments to pass to pytest",
    )

    # Serve command
    serve_parser = subparsers.add_parser("serve", help="Start the API server")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Host to bind to")
    serve_parser.add_argument("--port", type=int, default=8000, help="Port to bind to")
    serve_parser.add_argument("--reload", action="store_true", help="Enable auto-reload")

    args = parser.parse_args()

    try:
        if args.command == "token" and args.token_command == "issue":
            run_token_issue(args)
        elif args.command == "token" and args.token_command == "inspect":
            run_token_inspect(args.token)
        elif args.command == "token":
            token_parser.print_help()
        elif args.command == "quota":
            run_quota(args.action, args.tenant_id)
        elif args.command == "test":
            run_tests(args.pytest_args)
        elif args.command == "serve":
            run_server(args.host, args.port, args.reload)
        else:
            parser.print_help()
    except ServiceError as exc:
        print(f"Error: {exc.message}")
        sys.exit(1)


if __name__ == "__main__":
    main()
