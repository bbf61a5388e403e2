#!/usr/bin/env python3
"""Analyze resolution paths and fallbacks from a session's JSONL query log."""

import json
import sys
from collections import Counter
from pathlib import Path


def analyze_log(log_file: Path) -> None:
    """Summarize query, execution, result and feedback events."""
    if not log_file.exists():
        print(f"Error: Log file not found: {log_file}")
        return

    events = []
    with open(log_file) as f:
        for line in f:
            if not line.strip():
                continue
            try:
                events.append(json.loads(line))
            except json.JSONDecodeError:
                continue

    queries = [e for e in events if e.get("event_type") == "query"]
    executions = [e for e in events if e.get("event_type") == "execution"]
    results = [e for e in events if e.get("event_type") == "result"]
    feedback = [e for e in events if e.get("event_type") == "feedback"]

    if not queries:
        print(f"Warning: No 'query' events found in log file: {log_file}")
        return

    total = len(queries)
    paths = Counter(e["query_plan"].get("resolution_path", "unknown") for e in executions)
    answered = len(executions)
    fallbacks = total - answered

    print("Query Log Analysis")
    print("=" * 50)
    print(f"Total queries: {total}")
    print("\nResolution Paths:")
    print(f"  Pattern cache: {paths.get('pattern_cache', 0)} ({paths.get('pattern_cache', 0)/total*100:.1f}%)")
    print(f"  Fresh decompose: {paths.get('fresh_decompose', 0)} ({paths.get('fresh_decompose', 0)/total*100:.1f}%)")
    print(f"  LLM fallback: {fallbacks} ({fallbacks/total*100:.1f}%)")

    if executions:
        times = sorted(e["execution_time_ms"] for e in executions)
        print("\nLatency (ms):")
        print(f"  mean: {sum(times)/len(times):.2f}  median: {times[len(times)//2]:.2f}  max: {times[-1]:.2f}")

    empty = sum(1 for e in results if e["result_summary"].get("matched_count") == 0)
    excluded = sum(e["result_summary"].get("excluded_count", 0) for e in results)
    if results:
        print("\nResults:")
        print(f"  Zero-match results: {empty}/{len(results)}")
        print(f"  Records excluded by coercion: {excluded}")

    if feedback:
        signals = Counter(e["signal"] for e in feedback)
        print("\nFeedback:")
        for signal, count in signals.most_common():
            print(f"  {signal}: {count}")

    repeated = Counter(" ".join(q["query_text"].lower().split()) for q in queries)
    top = [(text, n) for text, n in repeated.most_common(5) if n > 1]
    if top:
        print("\nMost repeated queries:")
        for text, n in top:
            print(f"  {n}x  {text}")

    print("\nDiagnostics:")
    print("  Pattern cache <20% after warm-up: thresholds too strict or embeddings unavailable")
    print("  LLM fallback >30%: vocabulary gaps in the field map or extractor lexicon")
    print("  Many repeated queries: answers not satisfying, check problem patterns")


if __name__ == "__main__":
    if len(sys.argv) < 2:
        print("Usage: analyze_query_log.py <session>_queries.jsonl")
        sys.exit(1)
    analyze_log(Path(sys.argv[1]))
