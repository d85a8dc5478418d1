from __future__ import annotations

import argparse
import asyncio
import os
import sys
from dataclasses import fields
from typing import Any

from .app import build_components, run_service
from .config import Config, parse_field, field_kind
from .registry import HELP_TEXT


def _add_config_args(parser: argparse.ArgumentParser) -> None:
    for field in fields(Config):
        name = field.name.replace("_", "-")
        if field_kind(field.type) == "bool":
            group = parser.add_mutually_exclusive_group()
            group.add_argument(f"--{name}", dest=field.name, action="store_true")
            group.add_argument(f"--no-{name}", dest=field.name, action="store_false")
            parser.set_defaults(**{field.name: None})
        else:
            parser.add_argument(f"--{name}", dest=field.name, default=None)


def _cli_overrides(ns: argparse.Namespace) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    for field in fields(Config):
        value = getattr(ns, field.name, None)
        if value is None:
            continue
        if isinstance(value, bool):
            overrides[field.name] = value
        else:
            overrides[field.name] = parse_field(field.type, value)
    return overrides


async def _run_registry_command(config: Config, args: argparse.Namespace) -> str:
    components = build_components(config)
    registry = components.registry
    try:
        if args.command == "add":
            custom_message = " ".join(args.message) if args.message else None
            return await registry.add_stream(
                args.user_id, args.destination, args.channel, custom_message
            )
        if args.command == "remove":
            return await registry.remove_stream(args.user_id, args.destination, args.channel)
        return await registry.list_streams(args.destination)
    finally:
        components.close()


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="live-notify")
    subparsers = parser.add_subparsers(dest="command", required=True)

    common = argparse.ArgumentParser(add_help=False)
    _add_config_args(common)

    subparsers.add_parser("run", parents=[common])

    add = subparsers.add_parser("add", parents=[common])
    add.add_argument("user_id")
    add.add_argument("destination")
    add.add_argument("channel")
    add.add_argument("message", nargs="*")

    remove = subparsers.add_parser("remove", parents=[common])
    remove.add_argument("user_id")
    remove.add_argument("destination")
    remove.add_argument("channel")

    listing = subparsers.add_parser("list", parents=[common])
    listing.add_argument("destination")

    subparsers.add_parser("help", parents=[common])

    args = parser.parse_args(argv)
    try:
        overrides = _cli_overrides(args)
        config = Config.from_env_and_cli(overrides, os.environ)
    except ValueError as exc:
        print(f"config error: {exc}", file=sys.stderr)
        return 2

    if args.command == "help":
        print(HELP_TEXT)
        return 0
    try:
        config.validate_credentials()
    except ValueError as exc:
        print(f"config error: {exc}", file=sys.stderr)
        return 2
    if args.command == "run":
        return asyncio.run(run_service(config))
    if args.command in {"add", "remove", "list"}:
        print(asyncio.run(_run_registry_command(config, args)))
        return 0
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
