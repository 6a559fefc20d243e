#!/usr/bin/env python3
import argparse
import json
import sys
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from minflow import create_app
from minflow.extraction import build_extraction_payload, draft_from_extracted, forward_extraction


def main():
    parser = argparse.ArgumentParser(description="Send a paragraph to the AI extraction service and print the result")
    parser.add_argument("paragraph", help="Free-text description of one or more expenses")
    parser.add_argument("--category", action="append", default=[], help="Category name to offer the service (repeatable)")
    parser.add_argument("--drafts", action="store_true", help="Print the draft expenses the review screen would show")
    args = parser.parse_args()

    app = create_app()
    categories = [{"id": index, "name": name, "is_default": False} for index, name in enumerate(args.category, start=1)]
    payload, status = forward_extraction(
        build_extraction_payload(args.paragraph, categories),
        api_key=app.config["AI_EXPENSE_API_KEY"],
        api_url=app.config["AI_EXPENSE_API_URL"],
    )

    if args.drafts and status < 400 and payload.get("success"):
        expenses = (payload.get("output_data") or {}).get("expenses") or []
        payload = [draft_from_extracted(item, categories, app.config["FALLBACK_CATEGORY_ID"]) for item in expenses]

    print(json.dumps(payload, indent=2, sort_keys=True))
    return 0 if status < 400 else 1


if __name__ == "__main__":
    sys.exit(main())
