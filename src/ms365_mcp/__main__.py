"""Command line account management for the Microsoft 365 MCP server.

Usage:
    ms365-mcp-auth --login
    ms365-mcp-auth --verify-login
    ms365-mcp-auth --list-accounts
    ms365-mcp-auth --select-account ACCOUNT_ID
    ms365-mcp-auth --remove-account ACCOUNT_ID
    ms365-mcp-auth --expand-scopes
    ms365-mcp-auth --logout
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import asdict
from typing import Any

from ms365_mcp.auth.manager import AuthManager
from ms365_mcp.auth.models.errors import AuthError
from ms365_mcp.config import AuthSettings


def _print_instructions(text: str) -> None:
    print(text, file=sys.stderr)


def _emit(payload: Any) -> None:
    print(json.dumps(payload, indent=2))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ms365-mcp-auth",
        description="Manage Microsoft 365 sign-in for the MCP server",
    )
    actions = parser.add_mutually_exclusive_group(required=True)
    actions.add_argument("--login", action="store_true", help="Sign in with a device code")
    actions.add_argument("--logout", action="store_true", help="Sign out all accounts")
    actions.add_argument(
        "--verify-login", action="store_true", help="Check the token against Graph"
    )
    actions.add_argument(
        "--list-accounts", action="store_true", help="List signed-in accounts"
    )
    actions.add_argument("--select-account", metavar="ACCOUNT_ID", help="Switch account")
    actions.add_argument(
        "--remove-account", metavar="ACCOUNT_ID", help="Sign out one account"
    )
    actions.add_argument(
        "--expand-scopes",
        action="store_true",
        help="Grant the extra permissions work account tools need",
    )
    parser.add_argument(
        "--timeout", type=float, help="Seconds to wait for a device code login"
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return parser


async def run(args: argparse.Namespace, manager: AuthManager) -> int:
    await manager.initialize()

    if args.login:
        await manager.acquire_token_by_device_code(_print_instructions, args.timeout)
        account = await manager.get_current_account()
        _emit({"success": True, "account": asdict(account) if account else None})
    elif args.logout:
        _emit({"success": await manager.logout()})
    elif args.verify_login:
        result = await manager.test_login()
        _emit(asdict(result))
        return 0 if result.success else 1
    elif args.list_accounts:
        current = await manager.get_current_account()
        _emit(
            [
                {
                    **asdict(account),
                    "selected": current is not None
                    and account.account_id == current.account_id,
                }
                for account in await manager.list_accounts()
            ]
        )
    elif args.select_account:
        selected = await manager.select_account(args.select_account)
        _emit({"success": selected})
        return 0 if selected else 1
    elif args.remove_account:
        removed = await manager.remove_account(args.remove_account)
        _emit({"success": removed})
        return 0 if removed else 1
    elif args.expand_scopes:
        expanded = await manager.expand_to_work_account_scopes(
            _print_instructions, args.timeout
        )
        _emit({"success": expanded})
        return 0 if expanded else 1

    return 0


async def _main(args: argparse.Namespace) -> int:
    manager = AuthManager(AuthSettings())
    try:
        return await run(args, manager)
    except AuthError as e:
        logging.getLogger(__name__).error(str(e))
        _emit({"success": False, "error": str(e)})
        return 1
    finally:
        await manager.close()


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    return asyncio.run(_main(args))


if __name__ == "__main__":
    sys.exit(main())
