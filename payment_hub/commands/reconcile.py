import argparse
import asyncio
from pathlib import Path
from typing import Optional, Sequence

from payment_hub.config import Settings
from payment_hub.main import build_hub
from payment_hub.reconciliation import generate_reconciliation_csv


async def reconcile(
    order_ids: Sequence[str],
    output_path: str = "reconciliation.csv",
    settings: Optional[Settings] = None,
    transport=None,
) -> int:
    hub = build_hub(settings or Settings(), transport=transport)
    try:
        csv_text, unpaid = await generate_reconciliation_csv(hub.engine, order_ids)
    finally:
        await hub.aclose()
    Path(output_path).write_text(csv_text, newline="")
    return 1 if unpaid else 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Reconcile orders against the payment processor")
    parser.add_argument("order_ids", nargs="+", metavar="ORDER_ID")
    parser.add_argument("--output", default="reconciliation.csv")
    args = parser.parse_args(argv)
    return asyncio.run(reconcile(args.order_ids, args.output))


if __name__ == "__main__":
    raise SystemExit(main())
