"""
Worker entrypoint launched by the daemon for every instance of an app group.

Usage: python -u worker_host.py '<json args>'

The args object names the code to run as ``{"target": "package.module:func",
"params": {...}}``; ``func(**params)`` is called, awaited if it is a
coroutine function. Workers report through ``emit()``, which writes the
structured log envelope the supervisor demultiplexes.
"""

import asyncio
import importlib
import inspect
import json
import os
import sys
import traceback
from typing import Any, Callable, Optional


def emit(level: str, type: str, payload: Optional[dict] = None, stream=None) -> None:
    """Write one structured envelope line. ``type`` must stay the first key."""
    envelope = {"type": type, "level": level, "payload": payload or {}}
    stream = stream or sys.stdout
    stream.write(json.dumps(envelope) + "\n")
    stream.flush()


def resolve_target(target: str) -> Callable[..., Any]:
    module_name, _, attr = target.partition(":")
    if not module_name or not attr:
        raise ValueError(f"target must look like 'module:callable', got {target!r}")
    module = importlib.import_module(module_name)
    return getattr(module, attr)


def run(args: dict) -> Any:
    func = resolve_target(args["target"])
    params = args.get("params", {})
    if inspect.iscoroutinefunction(func):
        return asyncio.run(func(**params))
    return func(**params)


def main(argv: list) -> int:
    args = json.loads(argv[1]) if len(argv) > 1 else {}
    if "target" not in args:
        sys.stderr.write("Error: worker args have no 'target'\n")
        sys.stderr.flush()
        return 2

    sys.path.insert(0, os.getcwd())
    emit("DEBUG", "worker-started", {
        "target": args["target"],
        "worker_instance": os.environ.get("WORKER_INSTANCE"),
    })
    try:
        run(args)
    except Exception as e:
        # first line is the error, the rest is the stack
        sys.stderr.write(f"{type(e).__name__}: {e}\n{traceback.format_exc()}")
        sys.stderr.flush()
        return 1
    emit("DEBUG", "worker-finished", {"target": args["target"]})
    return 0


if __name__ == "__main__":
    sys.exit(main(sys.argv))
