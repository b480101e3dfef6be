# fs_demo.py
# Standalone network filesystem demo. No model, no snapshots.
#
# Mounts the network namespace in a fresh sandbox and runs a few lines of
# Python that read a remote resource with a plain open(). The first read
# fetches; the second is served from the cache.

import argparse
import logging

from netfs_agent import display
from netfs_agent.config import Settings
from netfs_agent.models import ExecutionResult
from netfs_agent.sandbox import build_sandbox

DEMO_PATH = "/network/icanhazip.com"

DEMO_CODE = """\
import networkfs

path = {path!r}
print("locator:", networkfs.path_to_url(path))
print("cached before read:", networkfs.is_cached(path))
with open(path, "r", encoding="utf-8") as fp:
    print(fp.read().strip())
print("cached after read:", networkfs.is_cached(path))
"""


def run_demo(settings: Settings, path: str = DEMO_PATH) -> ExecutionResult:
    with build_sandbox(settings) as sandbox:
        return sandbox.execute(DEMO_CODE.format(path=path))


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="netfs-demo", description="Read a remote resource through the sandbox filesystem.")
    parser.add_argument("path", nargs="?", default=DEMO_PATH)
    parser.add_argument("--strategy", choices=["node-tree", "intercept"], default="node-tree")
    parser.add_argument("--timeout", type=float, default=30.0)
    args = parser.parse_args(argv)

    display.configure_logging(logging.INFO)
    # Arbitrary hosts are only reachable with the registry off.
    settings = Settings(strategy=args.strategy, restricted=False, fetch_timeout=args.timeout)

    result = run_demo(settings, args.path)
    display.tool_result(result)
    return 0 if result.success else 1


if __name__ == "__main__":
    raise SystemExit(main())
