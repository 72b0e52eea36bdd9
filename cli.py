from __future__ import annotations

import argparse
import asyncio
import getpass
import json
import os
from dataclasses import asdict

from adminapi.client import AdminApiClient, create_client
from adminapi.constants import LOGGER
from adminapi.env import load_env, load_settings, setup_logging
from adminapi.errors import AdminApiError
from adminapi.models import UploadSource


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="adminapi", description="Admin API client")
    commands = parser.add_subparsers(dest="command", required=True)

    login = commands.add_parser("login", help="Sign in and store credentials")
    login.add_argument("member_id")

    commands.add_parser("logout", help="Sign out and clear stored credentials")
    commands.add_parser("whoami", help="Show the stored user")

    upload = commands.add_parser("upload", help="Upload a video file")
    upload.add_argument("path")
    upload.add_argument("--content-type", default=None)

    return parser


def _print_progress(value: float) -> None:
    print(f"\rUploading... {value * 100:6.2f}%", end="", flush=True)


def _session_invalid() -> None:
    LOGGER.error("Session is no longer valid; run `adminapi login` again.")


async def run_command(client: AdminApiClient, args: argparse.Namespace) -> int:
    if args.command == "login":
        password = os.getenv("ADMIN_API_PASSWORD") or getpass.getpass("Password: ")
        user = await client.login(args.member_id, password)
        print(json.dumps({"user": user}, indent=2, ensure_ascii=False))
        return 0

    if args.command == "logout":
        await client.logout()
        return 0

    if args.command == "whoami":
        user = await client.current_user()
        if user is None:
            print("Not logged in.")
            return 1
        print(json.dumps(user, indent=2, ensure_ascii=False))
        return 0

    source = UploadSource.from_path(args.path, content_type=args.content_type)
    descriptor = await client.upload(source, _print_progress)
    print()
    print(json.dumps(asdict(descriptor), indent=2, ensure_ascii=False))
    return 0


async def _run(args: argparse.Namespace) -> int:
    settings = load_settings()
    setup_logging(settings)
    async with create_client(settings, on_session_invalid=_session_invalid) as client:
        return await run_command(client, args)


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    load_env()
    try:
        return asyncio.run(_run(args))
    except AdminApiError as error:
        print(f"Error: {error.message}")
        return 1
    except (RuntimeError, OSError) as error:
        # Configuration problems and unreadable upload paths.
        print(f"Error: {error}")
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
