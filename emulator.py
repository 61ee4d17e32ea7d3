import argparse
import asyncio
import os
import sys
from typing import List, Optional

import yaml

from aioemu.aioemu_config import EmulatorConfig
from aioemu.aioemu_datatypes import CallResult, FixtureError, GuestLoadError
from aioemu.aioemu_session import Session

HELP = """Commands:
  click            call on_click
  long             call on_long_click
  resume           call on_resume
  <N> | menu <N>   choose menu item N (0 cancels)
  mode mock|real   switch network mode for later requests
  output           show the widget output
  report           show output, menu and network summary
  reload           re-read the script into a fresh runtime
  help             show this help
  exit             quit"""


# A basic awaitable input prompt.
async def ainput(prompt: str) -> str:
    loop = asyncio.get_running_loop()
    sys.stdout.write(prompt)
    sys.stdout.flush()
    return await loop.run_in_executor(None, sys.stdin.readline)


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="aio-emulator", description="Run an AIO Launcher widget script on the desktop.")
    p.add_argument("script", help="widget script (.lua)")
    p.add_argument("-m", "--mocks", metavar="FIXTURES", help="mock response file (JSON or YAML)")
    p.add_argument("-t", "--trigger", metavar="ENTRY", help="entry point to call after on_resume")
    p.add_argument("-i", "--interactive", action="store_true", help="start an interactive prompt")
    p.add_argument("--real", action="store_true", help="send real HTTP requests instead of using mocks")
    p.add_argument("--storage", metavar="PATH", help="storage file (default .widget-storage/data.json)")
    p.add_argument("--config", metavar="FILE", help="YAML or JSON config file")
    p.add_argument("--select", metavar="N", type=int, help="choose menu item N once the script has run")
    return p


def print_effects(result: CallResult) -> None:
    for effect in result.side_effects:
        topics = effect.get('topics') or []
        message = effect.get('message', '')
        if topics == ['stdout']:
            print(message)
        elif 'stderr' in topics:
            print(message, file=sys.stderr)
        else:
            print(f"[{','.join(topics)}] {message}")


def print_result(result: CallResult) -> None:
    print_effects(result)
    if result.status == 'not-found':
        print(f"(no {result.entry_point} handler)")


async def interactive(session: Session) -> None:
    print("Type 'help' for commands, 'exit' or Ctrl+D to quit.")
    while True:
        try:
            raw = await ainput(">> ")
            if raw == "":
                raise EOFError
            line = raw.strip()
            if not line:
                continue
            words = line.split()
            match words:
                case ["exit"] | ["quit"]:
                    break
                case ["help"]:
                    print(HELP)
                case ["click"]:
                    print_result(await session.click())
                case ["long"] | ["long_click"]:
                    print_result(await session.long_click())
                case ["resume"]:
                    print_result(await session.resume())
                case [n] if n.isdigit():
                    print_result(await session.select_menu(int(n)))
                case ["menu" | "select", n] if n.isdigit():
                    print_result(await session.select_menu(int(n)))
                case ["mode", mode]:
                    session.facade.set_mode(mode)
                    print(f"Network mode: {session.facade.mode}")
                case ["output"]:
                    print(session.output)
                case ["report"]:
                    print(session.report())
                case ["reload"]:
                    try:
                        session.reload()
                    except GuestLoadError as e:
                        print(e.format_error(), file=sys.stderr)
                        continue
                    print("Reloaded.")
                    print_result(await session.resume())
                case _:
                    print(f"Unknown command: {line} (try 'help')", file=sys.stderr)
        except EOFError:
            print("\nExiting.")
            break
        except Exception as e:
            print(f"Error: {e}", file=sys.stderr)


async def main(argv: Optional[List[str]] = None) -> int:
    """Load the script, run its lifecycle, and return the process exit code."""
    args = build_parser().parse_args(argv)

    try:
        config = EmulatorConfig.load(
            args.config,
            http_mode="real" if args.real else None,
            storage_path=args.storage,
            fixtures=args.mocks,
        )
    except (OSError, ValueError, yaml.YAMLError) as e:
        print(f"Error: invalid configuration: {e}", file=sys.stderr)
        return 1
    if config.debug:
        os.environ["AIOEMU_DEBUG"] = "1"

    if not os.path.isfile(args.script):
        print(f"Error: file not found: {args.script}", file=sys.stderr)
        return 1

    try:
        session = Session(config)
    except FixtureError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    if session.store.load_error:
        print(f"Warning: storage not loaded: {session.store.load_error}", file=sys.stderr)

    try:
        runtime = session.load_file(args.script)
    except GuestLoadError as e:
        print(e.format_error(), file=sys.stderr)
        return 1

    name = runtime.meta.get("name") or os.path.basename(args.script)
    print(f"Loaded {name} ({session.facade.mode} mode, {len(session.facade.fixtures)} mock(s))")
    try:
        print_result(await session.resume())
        if args.trigger and args.trigger != "on_resume":
            print_result(await session.invoke(args.trigger))
        if args.select is not None:
            print_result(await session.select_menu(args.select))
        if args.interactive:
            await interactive(session)
        else:
            print(session.report())
    finally:
        session.close()
    return 0


def cli() -> None:
    try:
        code = asyncio.run(main())
    except KeyboardInterrupt:
        print("\nExiting.")
        code = 130
    sys.exit(code)


if __name__ == "__main__":
    cli()
