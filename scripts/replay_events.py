"""Re-dispatch recorded webhook deliveries that never reached `processed`.

Replay goes through the same idempotent state machines as live deliveries, so
running it twice, or alongside the scheduled reconciliation, is safe.
"""

import argparse
from datetime import timedelta

from creditflow.common.db import SessionLocal, utcnow
from creditflow.common.logging import configure_logging
from creditflow.services.container import build_services


def main() -> int:
    """CLI entrypoint for manual event replay."""

    parser = argparse.ArgumentParser(description="Replay unprocessed inbound webhook events.")
    parser.add_argument("--older-than-seconds", type=int, default=120)
    parser.add_argument("--limit", type=int, default=100)
    parser.add_argument("--dry-run", action="store_true", help="list candidates without dispatching them")
    args = parser.parse_args()

    configure_logging()
    services = build_services(SessionLocal, service_name="replay-cli")
    if args.dry_run:
        cutoff = utcnow() - timedelta(seconds=args.older_than_seconds)
        rows = services.event_log.list_unprocessed(cutoff, limit=args.limit)
        for row in rows:
            print(
                f"{row.provider} {row.provider_event_id} received_at={row.received_at.isoformat()} "
                f"deliveries={row.delivery_count} last_error={row.last_error}"
            )
        print(f"{len(rows)} unprocessed event(s)")
        return 0

    replayed = services.webhooks.replay_unprocessed(args.older_than_seconds, limit=args.limit)
    print(f"replayed {replayed} event(s)")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
