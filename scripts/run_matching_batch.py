#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import logging

from review_exchange.errors import ApiError
from review_exchange.store import store


def main() -> int:
    parser = argparse.ArgumentParser(description="Run one matching pass over the submission queue.")
    parser.add_argument(
        "--max-assignments",
        type=int,
        default=None,
        help="Upper bound on assignments created in this pass.",
    )
    parser.add_argument(
        "--with-reminders",
        action="store_true",
        help="Also emit due-date reminders after matching.",
    )
    args = parser.parse_args()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")

    try:
        result = store.run_matching_batch(max_assignments=args.max_assignments)
    except ApiError as exc:
        print(json.dumps({"success": False, "error": {"code": exc.code, "message": exc.message}}, ensure_ascii=True))
        return 1
    output: dict[str, object] = {
        "success": True,
        "created": result["created"],
        "tier_breakdown": result["tier_breakdown"],
        "assignment_ids": [x["assignment_id"] for x in result["assignments"]],
    }
    if args.with_reminders:
        output["reminders"] = store.run_review_reminders()
    print(json.dumps(output, ensure_ascii=True))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
