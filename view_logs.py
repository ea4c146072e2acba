#!/usr/bin/env python3
"""View recent proxy exchanges from the NDJSON request log"""

import argparse
import asyncio
from collections import Counter

from llmlogproxy.constants import DEFAULT_LOG_FILE, DEFAULT_LOG_LIMIT
from llmlogproxy.log_store import LogStore


def pair_exchanges(entries):
    """Group records by correlation id, keeping first-seen order."""
    exchanges = {}
    for entry in entries:
        key = entry.get("correlation_id") or f"orphan-{len(exchanges)}"
        exchange = exchanges.setdefault(key, {"request": None, "response": None})
        kind = entry.get("kind")
        if kind in ("request", "response"):
            exchange[kind] = entry
    return exchanges


def view_log(log_path: str, limit: int):
    """Display request/response pairs in a readable format"""
    entries = asyncio.run(LogStore(log_path).read_recent(limit))
    if not entries:
        print(f"No records found in {log_path}")
        return

    exchanges = pair_exchanges(entries)

    print(f"\n{'='*80}")
    print(f"REQUEST LOG: {log_path}")
    print(f"Records: {len(entries)}  Exchanges: {len(exchanges)}")
    print(f"{'='*80}\n")

    status_counts = Counter(
        ex["response"].get("status") for ex in exchanges.values() if ex["response"]
    )
    unanswered = sum(1 for ex in exchanges.values() if ex["response"] is None)
    print("SUMMARY:")
    for status, count in sorted(status_counts.items(), key=lambda item: str(item[0])):
        print(f"  status {status}: {count}")
    if unanswered:
        print(f"  without response record: {unanswered}")
    print(f"\n{'='*80}\n")

    for i, (correlation_id, ex) in enumerate(exchanges.items(), 1):
        request, response = ex["request"], ex["response"]
        first = request or response
        print(f"Exchange #{i} - {first.get('timestamp')} ({correlation_id[:8]})")
        print(f"  Route: {first.get('route')}")
        if request and request.get("target"):
            print(f"  Target: {request['target']}")
        if response:
            print(f"  Status: {response.get('status')}")
            for call in response.get("tool_calls") or []:
                print(f"  Tool call: {call.get('name')} {call.get('arguments') or ''}")
            content = response.get("content") or ""
            if len(content) > 200:
                content = content[:200] + "..."
            if content:
                print(f"  Content: {content.replace(chr(10), ' | ')}")
        print()


def main():
    parser = argparse.ArgumentParser(description="View recent proxy exchanges")
    parser.add_argument("log_path", nargs="?", default=DEFAULT_LOG_FILE)
    parser.add_argument("--limit", type=int, default=DEFAULT_LOG_LIMIT)
    args = parser.parse_args()
    view_log(args.log_path, args.limit)


if __name__ == "__main__":
    main()
