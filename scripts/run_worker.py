#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import logging

from review_exchange.main import job_queue
from review_exchange.store import store
from review_exchange.worker_runtime import create_worker_runtime_from_env


def main() -> int:
    parser = argparse.ArgumentParser(description="Run resident worker loop for matching, reminder and outbox jobs.")
    parser.add_argument(
        "--iterations",
        type=int,
        default=0,
        help="Stop after N iterations (0 means run forever).",
    )
    args = parser.parse_args()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")

    store.job_queue = job_queue
    runtime = create_worker_runtime_from_env(store=store, job_queue=job_queue)
    stats = runtime.run_forever(stop_after_iterations=args.iterations if args.iterations > 0 else None)
    print(json.dumps({"success": True, "stats": stats}, ensure_ascii=True))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
