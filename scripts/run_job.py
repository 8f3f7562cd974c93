#!/usr/bin/env python3
"""
Run a single job against the real providers and follow its progress.

Needs FAL_API_KEY (and KLING_API_KEY for kling_motion) in the environment
or .env.

Usage:
    python3 scripts/run_job.py image_generation '{"prompt": "a lighthouse at dusk"}'
    python3 scripts/run_job.py face_swap @input.json --strategy kling_motion
"""

import argparse
import asyncio
import json
import sys
import time
from pathlib import Path

from swapflow.config import get_settings
from swapflow.logging_config import setup_logging
from swapflow.models.schemas import JobKind, SwapStrategy
from swapflow.services.job_manager import JobManager
from swapflow.services.job_runner import JobRunner


def load_input(raw: str) -> dict:
    """Parse inline JSON or @path/to/file.json."""
    if raw.startswith("@"):
        return json.loads(Path(raw[1:]).read_text(encoding="utf-8"))
    return json.loads(raw)


async def run(kind: JobKind, input_payload: dict, strategy: SwapStrategy | None) -> int:
    settings = get_settings()
    setup_logging(settings)

    store = JobManager()
    runner = JobRunner(store, settings)

    job = await runner.submit(kind, input_payload, strategy)
    queue = store.subscribe(job.id)
    started = time.time()

    print("=" * 60)
    print(f"Job {job.id} ({kind.value}{', ' + strategy.value if strategy else ''})")
    print("=" * 60)

    try:
        while True:
            message = await queue.get()
            stage = message.get("stage") or "-"
            external = message.get("external_status") or ""
            print(f"  {message['progress']:>3}%  {stage:<12} {external:<12} {message.get('message', '')}")
            if message["status"] in ("completed", "failed", "cancelled"):
                break
    except KeyboardInterrupt:
        await runner.cancel(job.id)

    task = runner.task_for(job.id)
    if task is not None:
        await asyncio.wait([task])

    final = await runner.get(job.id)
    print("=" * 60)
    print(f"Status: {final.status.value} in {time.time() - started:.1f}s")
    if final.error_message:
        print(f"Error: {final.error_message}")
    if final.output_payload:
        print(json.dumps(final.output_payload, indent=2))

    return 0 if final.status.value == "completed" else 1


def main() -> int:
    parser = argparse.ArgumentParser(description="Run one swapflow job")
    parser.add_argument("kind", choices=[k.value for k in JobKind])
    parser.add_argument("input", help="Input payload as JSON, or @file.json")
    parser.add_argument("--strategy", choices=[s.value for s in SwapStrategy])
    args = parser.parse_args()

    strategy = SwapStrategy(args.strategy) if args.strategy else None
    return asyncio.run(run(JobKind(args.kind), load_input(args.input), strategy))


if __name__ == "__main__":
    sys.exit(main())
