from __future__ import annotations

import argparse
import asyncio
from dataclasses import asdict
import json

from ghpolicies.core.logging import configure_logging
from ghpolicies.persistence.db import engine
from ghpolicies.services.jobs import enqueue_scan, wait_for_inline_jobs
from ghpolicies.services.runtime import get_github_client, get_scan_orchestrator


async def _main(enqueue: bool) -> None:
    # Scheduler hook: run one scan in-process, or hand it to the worker queue.
    configure_logging()
    try:
        if enqueue:
            job_id = await enqueue_scan()
            print(json.dumps({"job_id": job_id}))
            return
        result = await get_scan_orchestrator().perform_scan()
        print(json.dumps(asdict(result)))
        await wait_for_inline_jobs()
    finally:
        await get_github_client().aclose()
        await engine.dispose()


def main() -> None:
    parser = argparse.ArgumentParser(description="Run one organization compliance scan")
    parser.add_argument("--enqueue", action="store_true", help="enqueue on the worker instead of running inline")
    args = parser.parse_args()
    asyncio.run(_main(args.enqueue))


if __name__ == "__main__":
    main()
