"""Operator commands: ``python -m kiosk.cli add-store ...`` / ``recent-payments ...``."""
import argparse
import asyncio

import httpx

from kiosk.database import Base, engine
from kiosk.gateway import MercadoPagoClient
from kiosk.store_resolver import load_store, upsert_store


def add_store(args) -> None:
    Base.metadata.create_all(bind=engine)
    created = upsert_store(args.id, args.name, access_token=args.token, device_id=args.device)
    print(f"Store {args.id} {'created' if created else 'updated'}")
    print(f"  token:  {'configured' if args.token else 'missing'}")
    print(f"  device: {args.device or 'none (PIX only)'}")


async def _recent_payments(store_id: str, limit: int) -> None:
    store = load_store(store_id)
    if store is None:
        raise SystemExit(f"Unknown store {store_id}")
    store.require_token()

    async with httpx.AsyncClient(timeout=15) as http:
        payments = await MercadoPagoClient(store.access_token, http).search_payments(limit=limit)

    if not payments:
        print("No recent payments")
    for p in payments:
        print(f"{p.payment_id}  {p.status:<10} {p.transaction_amount:>9}  "
              f"ref={p.external_reference or '(empty)'}  {p.created_at}")


def recent_payments(args) -> None:
    asyncio.run(_recent_payments(args.store, args.limit))


def main(argv=None) -> None:
    parser = argparse.ArgumentParser(prog="kiosk")
    commands = parser.add_subparsers(dest="command", required=True)

    store = commands.add_parser("add-store", help="create or update a store and its credentials")
    store.add_argument("id")
    store.add_argument("name")
    store.add_argument("--token", help="Mercado Pago access token")
    store.add_argument("--device", help="Point device id")
    store.set_defaults(func=add_store)

    recent = commands.add_parser("recent-payments", help="list the latest gateway payments of a store")
    recent.add_argument("store")
    recent.add_argument("--limit", type=int, default=10)
    recent.set_defaults(func=recent_payments)

    args = parser.parse_args(argv)
    args.func(args)


if __name__ == "__main__":
    main()
