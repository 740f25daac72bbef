"""Local demo agent for CLI backend integration tests."""

from __future__ import annotations

import argparse
import os
import sys
import time
from pathlib import Path


def main(argv: list[str] | None = None) -> int:
    """Write the prompt into the working directory and echo a short summary."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--prompt-file", required=True)
    parser.add_argument("--output-name", default=None)
    parser.add_argument("--sleep", type=float, default=0.0)
    parser.add_argument("--exit-code", type=int, default=0)
    args = parser.parse_args(argv)

    prompt = Path(args.prompt_file).read_text("utf-8")
    if args.sleep > 0:
        time.sleep(args.sleep)
    if args.exit_code != 0:
        print(f"echo_agent failing with exit code {args.exit_code}", file=sys.stderr)
        return args.exit_code

    task_id = os.getenv("TASKFLEET_TASK_ID", "task")
    output_name = args.output_name or f"{task_id}.md"
    Path(output_name).write_text(prompt, "utf-8")
    first_line = prompt.strip().splitlines()[0] if prompt.strip() else ""
    print(f"echo_agent wrote {output_name}: {first_line}")
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
