"""Trigger one reconciliation run and print its JSON report."""

import argparse
import json
import os

import httpx


def main() -> None:
    """CLI entrypoint for reconciliation runs."""

    parser = argparse.ArgumentParser(description="Run ledger reconciliation through the ledger API.")
    parser.add_argument("--ledger-url", default="http://localhost:8001")
    parser.add_argument("--api-key", default=os.getenv("API_KEY", ""))
    parser.add_argument("--balances-only", action="store_true", help="only list balance/ledger mismatches")
    parser.add_argument("--limit", type=int, default=1000)
    args = parser.parse_args()

    headers = {"x-api-key": args.api_key}
    if args.balances_only:
        resp = httpx.get(
            f"{args.ledger_url}/reconciliation/balances",
            params={"limit": args.limit},
            headers=headers,
            timeout=10.0,
        )
    else:
        resp = httpx.post(f"{args.ledger_url}/reconciliation/runs", headers=headers, timeout=60.0)
    resp.raise_for_status()
    print(json.dumps(resp.json(), indent=2))


if __name__ == "__main__":
    main()
