import asyncio
import os
import sys
from pathlib import Path

from icrepl.repl_runtime import ScriptRunner
from icrepl.repl_http import HttpInvoker

DEFAULT_REPLICA = "http://localhost:4943"


def make_runner() -> ScriptRunner:
    replica = os.environ.get("ICREPL_REPLICA", DEFAULT_REPLICA)
    return ScriptRunner(invoker=HttpInvoker(replica))


def print_effects(result):
    for effect in result.side_effects:
        if effect.get('topics') == ['stdout']:
            print(effect.get('message', ''))


# A basic awaitable input prompt.
async def ainput(prompt: str) -> str:
    loop = asyncio.get_running_loop()
    sys.stdout.write(prompt)
    sys.stdout.flush()
    return await loop.run_in_executor(None, sys.stdin.readline)


async def run_script_file(file_path: str):
    """Run a script file non-interactively, then its `__main`, and exit with appropriate status."""
    from icrepl.repl_file import read_script
    from icrepl.repl_datatypes import ReplError
    runner = make_runner()
    p = Path(file_path)
    try:
        source = read_script(str(p))
    except ReplError as e:
        print(f"Error: {e}", file=sys.stderr)
        raise SystemExit(1)
    runner.source_dir = str(p.parent.resolve())
    result = await runner.handle_script(source, run_main=True)
    print_effects(result)
    if result.status == 'error':
        print(result.format_error(), file=sys.stderr)
        raise SystemExit(1)


async def main():
    """Run a script file when provided, otherwise start the interactive REPL."""
    if len(sys.argv) > 1:
        arg = sys.argv[1]
        if not arg.startswith("-"):
            await run_script_file(arg)
            return

    print("icrepl v0.1")
    print("Type 'exit' or press Ctrl+D to quit.")

    runner = make_runner()
    runner.source_dir = str(Path.cwd())

    # REPL Loop
    while True:
        try:
            raw = await ainput(">> ")
            if raw == "":
                raise EOFError
            line = raw.strip()

            if not line:
                continue
            if line == "exit":
                break

            result = await runner.handle_script(line)

            if result.status == 'error':
                print(result.format_error(), file=sys.stderr)
                continue

            print_effects(result)

        except EOFError:
            print("\nExiting.")
            break


def cli():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nExiting.")


if __name__ == "__main__":
    cli()
