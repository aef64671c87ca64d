"""Local stand-in for the analysis tool used by tests and smoke runs."""

from __future__ import annotations

import argparse
import json
import subprocess
import sys
import time
from pathlib import Path


def main(argv: list[str] | None = None) -> int:
    """Write a deterministic result, or misbehave on request."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--result-base", required=True)
    parser.add_argument("--sim", default="0.5")
    parser.add_argument(
        "--mode",
        choices=["ok", "fail", "hang", "raw", "no-result"],
        default="ok",
    )
    parser.add_argument("--delay", type=float, default=0.0)
    parser.add_argument("--exit-code", type=int, default=3)
    parser.add_argument("--child-pid-file", default=None)
    parser.add_argument("task_id")
    parser.add_argument("artifact_a")
    parser.add_argument("artifact_b")
    args = parser.parse_args(argv)

    print(f"comparing {args.artifact_a} with {args.artifact_b}", flush=True)
    if args.child_pid_file:
        child = subprocess.Popen(  # noqa: S603
            [sys.executable, "-c", "import time; time.sleep(600)"],
        )
        Path(args.child_pid_file).write_text(str(child.pid), "utf-8")
    if args.delay > 0:
        time.sleep(args.delay)

    if args.mode == "hang":
        while True:
            time.sleep(1)
    if args.mode == "fail":
        print("analysis failed: unsupported binary", file=sys.stderr, flush=True)
        return args.exit_code
    if args.mode == "no-result":
        return 0

    for artifact in (args.artifact_a, args.artifact_b):
        if not Path(artifact).is_file():
            print(f"missing artifact: {artifact}", file=sys.stderr, flush=True)
            return 2

    result_path = Path(args.result_base) / "result" / args.task_id / "result.json"
    result_path.parent.mkdir(parents=True, exist_ok=True)
    if args.mode == "raw":
        result_path.write_text(args.sim, "utf-8")
        return 0
    payload = {"sim": float(args.sim), "details": {"backend": "stub_tool"}}
    result_path.write_text(json.dumps(payload, sort_keys=True), "utf-8")
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
