"""
codeloom command line.

Usage:
    python -m codeloom run [--env-file .env]     # Connect and serve the live program
    python -m codeloom check FILE [FILE ...]     # Compile fragments offline, no execution

Exit status:
    0   clean stop
    1   fatal startup, configuration, install or invariant error
    75  a capability was installed; restart the process
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path
from typing import List, Optional

from .config import load_settings
from .errors import (
    EXIT_RESTART,
    CodeloomError,
    ConfigError,
    InstallFailed,
    InvariantViolation,
    RestartRequired,
)
from .gateway import DiscordGateway
from .kernel.engine import compile_block
from .kernel.schema import extract_code_blocks
from .session import LiveSession


def console(content: str) -> None:
    print(content, file=sys.stderr)


# =============================================================================
# Commands
# =============================================================================

async def serve(session: LiveSession) -> None:
    try:
        await session.run()
    finally:
        await session.drain()
        await session.gateway.close()


def cmd_run(args: argparse.Namespace) -> int:
    """Connect to the gateway and keep the fragment program live."""
    try:
        settings = load_settings(args.env_file)
    except ConfigError as e:
        for problem in e.problems:
            print(f"✗ {problem}", file=sys.stderr)
        return 1

    console("[*] Starting codeloom")
    console(f"    Code channels: {', '.join(settings.code_channel_ids)}")
    console(f"    Log channel:   {settings.log_channel_id}")
    console(f"    Programmers:   {len(settings.programmer_ids)}")
    console(f"    Max fragments: {settings.max_code_messages}")

    gateway = DiscordGateway(settings.bot_token, output_sink=console)
    session = LiveSession.build(settings, gateway, output_sink=console)

    try:
        asyncio.run(serve(session))
    except RestartRequired as e:
        console(f"[*] {e}")
        return EXIT_RESTART
    except InstallFailed as e:
        print(f"✗ {e}", file=sys.stderr)
        return 1
    except InvariantViolation as e:
        print(f"✗ Invariant violated: {e}", file=sys.stderr)
        return 1
    except CodeloomError as e:
        print(f"✗ {type(e).__name__}: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        console("[*] Stopped")
    return 0


def cmd_check(args: argparse.Namespace) -> int:
    """Compile every fenced block of each file, without running anything."""
    failures = 0
    for name in args.files:
        path = Path(name)
        if not path.exists():
            print(f"✗ File not found: {name}", file=sys.stderr)
            failures += 1
            continue

        blocks = extract_code_blocks(path.read_text(encoding="utf-8"))
        if not blocks:
            print(f"- {name}: no code blocks")
            continue

        broken = 0
        for index, source in enumerate(blocks):
            try:
                compile_block(source, path.stem, index)
            except SyntaxError as e:
                broken += 1
                print(f"✗ {name} block {index}: line {e.lineno}: {e.msg}")
        failures += broken
        if not broken:
            print(f"✓ {name}: {len(blocks)} block(s)")

    return 1 if failures else 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="codeloom",
        description="Run a program written as chat messages",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Connect and serve the live program")
    run_parser.add_argument("--env-file", help="Path to a .env file (default: ./.env if present)")

    check_parser = subparsers.add_parser("check", help="Compile fragment files without running them")
    check_parser.add_argument("files", nargs="+", help="Files containing fenced ```py blocks")

    args = parser.parse_args(argv)

    if args.command == "run":
        return cmd_run(args)
    elif args.command == "check":
        return cmd_check(args)

    return 1


if __name__ == "__main__":
    sys.exit(main())
