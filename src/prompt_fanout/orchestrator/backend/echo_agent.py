"""Deterministic local agent for CLI backend integration tests."""

from __future__ import annotations

import argparse
import json
import sys
import time
from pathlib import Path


def main(argv: list[str] | None = None) -> int:
    """Echo the prompt back, or misbehave as the ``--case`` asks."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--prompt", default=None)
    parser.add_argument("--prompt-file", default=None)
    parser.add_argument("--case", default="success")
    parser.add_argument("--state-file", default=None)
    parser.add_argument("--sleep-seconds", type=float, default=3.0)
    args = parser.parse_args(argv)

    if args.prompt_file:
        prompt = Path(args.prompt_file).read_text("utf-8")
    elif args.prompt is not None:
        prompt = args.prompt
    else:
        parser.error("Either --prompt or --prompt-file is required")

    case = args.case.strip().lower()

    if case == "timeout":
        time.sleep(args.sleep_seconds)
        return 0

    if case == "transient_once":
        if args.state_file is None:
            parser.error("--state-file is required for transient_once")
        state_path = Path(args.state_file)
        attempt = _load_attempt(state_path) + 1
        state_path.write_text(json.dumps({"attempt": attempt}), "utf-8")
        if attempt == 1:
            print("HTTP 429 too many requests, please retry", file=sys.stderr)
            return 1

    if case == "non_retryable":
        print("permission denied", file=sys.stderr)
        return 2

    print(prompt.strip())
    return 0


def _load_attempt(path: Path) -> int:
    if not path.exists():
        return 0
    try:
        payload = json.loads(path.read_text("utf-8"))
    except json.JSONDecodeError:
        return 0
    value = payload.get("attempt", 0) if isinstance(payload, dict) else 0
    return value if isinstance(value, int) else 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
