"""Command-line interface for oidc-session."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
import time

from pathlib import Path
from typing import TYPE_CHECKING

from .exceptions import OIDCSessionError


if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Sequence

    from .client import OIDCSessionClient
    from .config import OIDCSettings


def main(argv: Sequence[str] | None = None) -> int:
    """Run the main CLI entry point.

    Returns
    -------
    int
        Exit code.
    """
    parser = argparse.ArgumentParser(
        prog="oidc-session",
        description="OpenID Connect login and session tools",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    subparsers.add_parser("login", help="Log in through the browser")
    subparsers.add_parser("logout", help="End the session at the provider and locally")
    subparsers.add_parser("status", help="Show the current session")
    subparsers.add_parser("userinfo", help="Fetch and print the userinfo claims")
    subparsers.add_parser("token", help="Print a valid access token (refreshing if needed)")

    # config command
    config_parser = subparsers.add_parser(
        "config",
        help="Show or export configuration",
    )
    config_group = config_parser.add_mutually_exclusive_group()
    config_group.add_argument(
        "--show",
        action="store_true",
        help="Show current configuration",
    )
    config_group.add_argument(
        "--toml",
        action="store_true",
        help="Export configuration as TOML",
    )
    config_parser.add_argument(
        "--output",
        "-o",
        type=str,
        help="Output file path (default: stdout)",
    )

    args = parser.parse_args(argv)

    if args.command == "config":
        return handle_config(args)
    if args.command in _SESSION_COMMANDS:
        return handle_session_command(args)
    parser.print_help()
    return 0


def handle_config(args: argparse.Namespace) -> int:
    """Handle the config command.

    Parameters
    ----------
    args : argparse.Namespace
        Parsed command line arguments.

    Returns
    -------
    int
        Exit code.
    """
    from .config import OIDCSettings

    settings = OIDCSettings()
    output = settings.to_toml() if args.toml else settings.show()

    if args.output:
        Path(args.output).write_text(output, encoding="utf-8")
        print(f"Configuration written to {args.output}")
    else:
        print(output)
    return 0


def handle_session_command(args: argparse.Namespace) -> int:
    """Run a command that needs the session client.

    Parameters
    ----------
    args : argparse.Namespace
        Parsed command line arguments.

    Returns
    -------
    int
        Exit code: 0 on success, 1 on a handled error.
    """
    from .client import configure_logging
    from .config import get_settings
    from .log import enable_debug

    settings = get_settings()
    configure_logging(settings)
    if args.debug:
        enable_debug()

    try:
        settings.require_client()
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    handler = _SESSION_COMMANDS[args.command]
    try:
        return asyncio.run(_run_with_client(settings, handler))
    except OIDCSessionError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("Interrupted", file=sys.stderr)
        return 1


async def _run_with_client(
    settings: OIDCSettings, handler: Callable[[OIDCSessionClient], Awaitable[int]]
) -> int:
    from .client import OIDCSessionClient

    async with OIDCSessionClient(settings) as client:
        await client.start()
        return await handler(client)


async def _login(client: OIDCSessionClient) -> int:
    await client.login()
    print(format_status(client))
    return 0


async def _logout(client: OIDCSessionClient) -> int:
    await client.logout()
    print("Logged out")
    return 0


async def _status(client: OIDCSessionClient) -> int:
    print(format_status(client))
    return 0


async def _userinfo(client: OIDCSessionClient) -> int:
    user_info = await client.fetch_user_info()
    print(json.dumps(user_info, indent=2, sort_keys=True))
    return 0


async def _token(client: OIDCSessionClient) -> int:
    print(await client.access_token())
    return 0


_SESSION_COMMANDS: dict[str, Callable[[OIDCSessionClient], Awaitable[int]]] = {
    "login": _login,
    "logout": _logout,
    "status": _status,
    "userinfo": _userinfo,
    "token": _token,
}


def format_status(client: OIDCSessionClient) -> str:
    """Render the session status as human-readable lines."""
    status = client.status()
    if status.logged_in:
        lines = [f"Logged in as {status.username or status.subject or 'unknown user'}"]
    elif status.authorization_error:
        lines = [f"Session rejected by resource server ({status.authorization_error})"]
    else:
        return "Not logged in"

    if status.subject:
        lines.append(f"  subject:       {status.subject}")
    if status.expires_at is not None:
        remaining = int(status.expires_at - time.time())
        if remaining > 0:
            lines.append(f"  token expires: in {remaining}s")
        else:
            lines.append("  token expires: expired")
    lines.append(f"  refreshable:   {'yes' if status.has_refresh_token else 'no'}")
    return "\n".join(lines)


if __name__ == "__main__":
    sys.exit(main())
