# run.py
# Entry point. Config and wiring only. No logic lives here.
#
# Swap NETFS_MODEL for any OpenRouter-supported model.
# https://openrouter.ai/models

import argparse
import logging

from netfs_agent import display
from netfs_agent.agent import AgentLoop, expose_files
from netfs_agent.config import Settings
from netfs_agent.llm import ReasoningClient
from netfs_agent.sandbox import build_sandbox
from netfs_agent.state import AgentState
from netfs_agent.state_cache import StateCache

TASK_ID = "task-0"
PROMPT = "Figure out the current ip address and make me a picture of it"


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="netfs-agent",
        description="Run a resumable agent whose sandbox reads the network through /network.",
    )
    parser.add_argument("task_id", nargs="?", default=TASK_ID, help="Snapshot namespace for this run.")
    parser.add_argument("prompt", nargs="?", default=PROMPT, help="Initial user message.")
    parser.add_argument("--max-steps", type=int, default=None, help="Override NETFS_MAX_STEPS.")
    parser.add_argument("--clear-cache", action="store_true", help="Delete this task's snapshots first.")
    parser.add_argument("--no-cache", action="store_true", help="Neither read nor write snapshots.")
    parser.add_argument("-v", "--verbose", action="count", default=0, help="-v for info, -vv for debug logs.")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    display.configure_logging(
        {0: logging.WARNING, 1: logging.INFO}.get(args.verbose, logging.DEBUG)
    )

    settings = Settings.from_env()
    max_steps = args.max_steps if args.max_steps is not None else settings.max_steps

    sandbox = None
    try:
        sandbox = build_sandbox(settings)
        client = ReasoningClient(
            settings.model,
            api_key=settings.api_key,
            base_url=settings.base_url,
            max_tokens=settings.max_tokens,
        )
        loop = AgentLoop(client, sandbox, StateCache(settings.cache_dir))

        display.banner(settings.model, args.task_id, settings.strategy)
        display.prompt_received(args.prompt)

        initial_state = AgentState(messages=[{"role": "user", "content": args.prompt}])
        final_state = loop.run(
            args.task_id,
            initial_state,
            max_steps=max_steps,
            use_cache=settings.use_cache and not args.no_cache,
            clear_cache_on_start=settings.clear_cache or args.clear_cache,
        )
        expose_files(final_state, settings.output_dir)
    except KeyboardInterrupt:
        display.halt("Interrupted.")
        return 130
    except Exception as exc:
        display.console.print_exception()
        display.halt(f"{type(exc).__name__}: {exc}")
        return 1
    finally:
        if sandbox is not None:
            sandbox.dispose()

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
