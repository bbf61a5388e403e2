#!/usr/bin/env python3
"""
Ask questions about a card wallet from the command line.

Usage:
    python scripts/ask_wallet.py wallet.json "total balance by issuer"
    python scripts/ask_wallet.py wallet.json            # interactive, one question per line
"""

import argparse
import json
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from wallet_query.core.config_loader import load_config
from wallet_query.core.dispatcher import InlineDispatcher
from wallet_query.core.query_service import QueryResponse, QueryService
from wallet_query.logging_config import configure_logging


def load_records(path: Path) -> list[dict]:
    """Read cards from a JSON file: a list of objects or {"cards": [...]}."""
    with open(path) as f:
        data = json.load(f)
    if isinstance(data, dict):
        data = data.get("cards", [])
    if not isinstance(data, list):
        raise ValueError(f"{path} must contain a list of card objects")
    return data


def render(response: QueryResponse) -> str:
    if response.requires_fallback:
        detail = f": {response.error}" if response.error else ""
        return f"[fallback: {response.fallback_reason}{detail}]"
    payload = {
        "metadata": response.metadata(),
        "output_format": response.plan.output_format.value,
        "result": response.result.to_dict(),
    }
    return json.dumps(payload, indent=2, default=str)


def main() -> int:
    parser = argparse.ArgumentParser(description="Ask natural-language questions about a card wallet")
    parser.add_argument("records", type=Path, help="JSON file with card records")
    parser.add_argument("question", nargs="*", help="Question (omit for interactive mode)")
    parser.add_argument("--intent", default="query_card_data", help="Intent label from the upstream classifier")
    parser.add_argument("--session", default="cli", help="Conversation session id")
    parser.add_argument("--config", type=Path, help="Path to wallet_query.yaml")
    parser.add_argument("--json-logs", action="store_true", help="Emit structlog events as JSON lines")
    args = parser.parse_args()

    configure_logging(json_logs=args.json_logs)

    if not args.records.exists():
        print(f"Error: records file not found: {args.records}")
        return 1
    records = load_records(args.records)

    service = QueryService(config=load_config(args.config), dispatcher=InlineDispatcher())
    try:
        if args.question:
            print(render(service.ask(" ".join(args.question), records, args.intent, args.session)))
            return 0

        for line in sys.stdin:
            question = line.strip()
            if not question:
                continue
            if question in ("quit", "exit"):
                break
            print(render(service.ask(question, records, args.intent, args.session)))
    finally:
        service.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
