"""Command-line interface for ssoauth."""

from __future__ import annotations

import argparse
import asyncio
import json
import shlex
import sys

from typing import TYPE_CHECKING

from .auth import DevicePollBackoff, FlowOrchestrator
from .exceptions import SsoAuthException
from .types import DevicePollStatus, to_iso


if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from .config import Settings


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser.

    Returns
    -------
    argparse.ArgumentParser
        Parser with one subcommand per operation.
    """
    parser = argparse.ArgumentParser(
        prog="ssoauth",
        description="Sign in through IAM Identity Center and manage role credentials",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable debug logging",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # login command
    login_parser = subparsers.add_parser("login", help="Sign in and store an SSO token")
    mode = login_parser.add_mutually_exclusive_group()
    mode.add_argument(
        "--device",
        action="store_true",
        help="Use the device-code flow (default)",
    )
    mode.add_argument(
        "--browser",
        action="store_true",
        help="Use the browser flow with a local redirect listener",
    )
    login_parser.add_argument("--start-url", type=str, help="Portal start URL")
    login_parser.add_argument("--region", type=str, help="Identity Center region")

    subparsers.add_parser("status", help="Show sign-in and credential status")
    subparsers.add_parser("accounts", help="List available accounts")

    roles_parser = subparsers.add_parser("roles", help="List roles in an account")
    roles_parser.add_argument("account_id", help="Account id")

    select_parser = subparsers.add_parser(
        "select",
        help="Select an account and role and fetch credentials",
    )
    select_parser.add_argument("account_id", help="Account id")
    select_parser.add_argument("role", help="Role name")
    select_parser.add_argument("--account-name", type=str, help="Display name to store")

    subparsers.add_parser("refresh", help="Re-issue credentials for the selected role")
    subparsers.add_parser("env", help="Print credentials as shell exports")
    subparsers.add_parser("logout", help="Forget tokens and credentials")

    # config command
    config_parser = subparsers.add_parser("config", help="Show or export configuration")
    config_parser.add_argument(
        "--toml",
        action="store_true",
        help="Export configuration as TOML",
    )

    return parser


def main(argv: list[str] | None = None) -> int:
    """Run the main CLI entry point.

    Returns
    -------
    int
        Exit code.
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    from .config import get_settings
    from .log import configure, set_level

    settings = get_settings()
    configure(settings.log)
    if args.verbose:
        set_level("DEBUG")

    if args.command == "config":
        print(settings.to_toml() if args.toml else settings.show())
        return 0

    handler = _HANDLERS[args.command]
    try:
        return asyncio.run(_run(settings, lambda orchestrator: handler(orchestrator, args, settings)))
    except KeyboardInterrupt:
        print("\nCancelled.", file=sys.stderr)
        return 130


async def _run(
    settings: Settings,
    command: Callable[[FlowOrchestrator], Awaitable[int]],
) -> int:
    orchestrator = FlowOrchestrator.from_settings(settings)
    try:
        return await command(orchestrator)
    except SsoAuthException as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        await orchestrator.aclose()


# ── Handlers ────────────────────────────────────────────────────────


async def handle_login(
    orchestrator: FlowOrchestrator,
    args: argparse.Namespace,
    settings: Settings,
) -> int:
    """Handle the login command.

    Parameters
    ----------
    orchestrator : FlowOrchestrator
        The engine to drive.
    args : argparse.Namespace
        Parsed command line arguments.
    settings : Settings
        Loaded configuration; supplies defaults for start URL and region.

    Returns
    -------
    int
        Exit code.
    """
    start_url = args.start_url or settings.sso.start_url
    region = args.region or settings.sso.region
    if not start_url:
        print(
            "Error: no start URL. Pass --start-url or set SSOAUTH_SSO__START_URL.",
            file=sys.stderr,
        )
        return 1

    if args.browser:
        result = await orchestrator.start_browser_flow(start_url, region)
        print(f"Signed in; token valid until {result.expires_at_iso}")
        return 0

    return await device_login(orchestrator, start_url, region)


async def device_login(orchestrator: FlowOrchestrator, start_url: str, region: str) -> int:
    """Run the device-code flow, polling until it reaches a terminal status."""
    session = await orchestrator.start_device_flow(start_url, region)
    print(f"Open {session.verification_uri_complete}")
    print(f"and confirm the code {session.user_code}")

    backoff = DevicePollBackoff(session.poll_interval_seconds)
    wait = backoff.interval
    while True:
        await asyncio.sleep(wait)
        result = await orchestrator.poll_device_flow(session.device_code)
        if result.status is DevicePollStatus.SUCCESS:
            print(f"Signed in; token valid until {to_iso(result.expires_at)}")
            return 0
        if result.status is DevicePollStatus.EXPIRED:
            print("Error: the device code expired; run login again.", file=sys.stderr)
            return 1
        if result.status is DevicePollStatus.DENIED:
            print("Error: the sign-in request was denied.", file=sys.stderr)
            return 1
        wait = backoff.next_interval(result.status.value)


async def handle_status(orchestrator: FlowOrchestrator, args: argparse.Namespace, settings: Settings) -> int:
    """Print the status summary as JSON."""
    status = await orchestrator.get_status()
    print(json.dumps(status.to_dict(), indent=2))
    return 0


async def handle_accounts(orchestrator: FlowOrchestrator, args: argparse.Namespace, settings: Settings) -> int:
    """List accounts."""
    accounts = await orchestrator.list_accounts()
    if not accounts:
        print("No accounts available.")
    for account in accounts:
        print(f"{account.id:<14} {account.name:<32} {account.email}")
    return 0


async def handle_roles(orchestrator: FlowOrchestrator, args: argparse.Namespace, settings: Settings) -> int:
    """List roles for one account."""
    roles = await orchestrator.list_roles(args.account_id)
    if not roles:
        print(f"No roles available in {args.account_id}.")
    for role in roles:
        print(role.name)
    return 0


async def handle_select(orchestrator: FlowOrchestrator, args: argparse.Namespace, settings: Settings) -> int:
    """Select an account and role."""
    credentials = await orchestrator.select_account_role(
        args.account_id, args.role, account_name=args.account_name
    )
    print(
        f"Selected {args.role} in {args.account_id}; "
        f"credentials valid until {to_iso(credentials.expiration)}"
    )
    return 0


async def handle_refresh(orchestrator: FlowOrchestrator, args: argparse.Namespace, settings: Settings) -> int:
    """Re-issue credentials for the stored selection."""
    credentials = await orchestrator.refresh_credentials()
    print(f"Credentials valid until {to_iso(credentials.expiration)}")
    return 0


async def handle_env(orchestrator: FlowOrchestrator, args: argparse.Namespace, settings: Settings) -> int:
    """Print credentials as ``export`` lines for ``eval``."""
    env = await orchestrator.credential_environment()
    for name, value in env.items():
        print(f"export {name}={shlex.quote(value)}")
    return 0


async def handle_logout(orchestrator: FlowOrchestrator, args: argparse.Namespace, settings: Settings) -> int:
    """Sign out."""
    await orchestrator.logout()
    print("Signed out.")
    return 0


_HANDLERS: dict[str, Callable[[FlowOrchestrator, argparse.Namespace, Settings], Awaitable[int]]] = {
    "login": handle_login,
    "status": handle_status,
    "accounts": handle_accounts,
    "roles": handle_roles,
    "select": handle_select,
    "refresh": handle_refresh,
    "env": handle_env,
    "logout": handle_logout,
}


if __name__ == "__main__":
    sys.exit(main())
