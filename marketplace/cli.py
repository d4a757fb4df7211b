from __future__ import annotations

import argparse
import json
from datetime import timedelta

from marketplace.core.clock import now_utc
from marketplace.core.config import get_settings
from marketplace.core.logging import configure_logging
from marketplace.core.security import ROLES, create_access_token
from marketplace.demo.catalog import seed_demo_catalog
from marketplace.domain.orders import projections
from marketplace.domain.orders.store import OrderStore
from marketplace.persistence.pg import init_db, session_scope


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Marketplace order service CLI")
    top = parser.add_subparsers(dest="command", required=True)

    catalog = top.add_parser("catalog", help="Catalog operations")
    catalog_sub = catalog.add_subparsers(dest="catalog_command", required=True)
    catalog_sub.add_parser("seed", help="Insert the demo vendors' products")

    orders = top.add_parser("orders", help="Order inspection")
    orders_sub = orders.add_subparsers(dest="orders_command", required=True)
    timeline = orders_sub.add_parser("timeline", help="Print an order's status history")
    timeline.add_argument("order_number")
    orders_sub.add_parser("overdue", help="List orders older than the overdue threshold that are not final")

    token = top.add_parser("token", help="Issue a bearer token for local testing")
    token.add_argument("user_id")
    token.add_argument("--role", choices=list(ROLES), default="customer")
    token.add_argument("--name", default=None)
    token.add_argument("--email", default=None)
    token.add_argument("--ttl", type=int, default=None, help="seconds (default: settings.access_token_ttl_seconds)")

    return parser


def _print(payload: dict) -> None:
    print(json.dumps(payload, ensure_ascii=False, indent=2))


def _seed_catalog() -> int:
    init_db()
    with session_scope() as session:
        _print(seed_demo_catalog(session, low_stock_threshold=get_settings().low_stock_threshold))
    return 0


def _print_timeline(order_number: str) -> int:
    init_db()
    with session_scope() as session:
        order = OrderStore(session).get_by_number(order_number)
        _print(
            {
                "order_number": order.order_number,
                "current_status": order.status,
                "timeline": projections.timeline(order),
            }
        )
    return 0


def _print_overdue() -> int:
    init_db()
    cutoff = now_utc() - timedelta(days=get_settings().overdue_after_days)
    with session_scope() as session:
        orders = OrderStore(session).overdue(cutoff)
        _print({"count": len(orders), "orders": [projections.order_summary(o) for o in orders]})
    return 0


def main() -> int:
    configure_logging()
    parser = _build_parser()
    args = parser.parse_args()

    if args.command == "catalog" and args.catalog_command == "seed":
        return _seed_catalog()
    if args.command == "orders" and args.orders_command == "timeline":
        return _print_timeline(args.order_number)
    if args.command == "orders" and args.orders_command == "overdue":
        return _print_overdue()
    if args.command == "token":
        print(create_access_token(args.user_id, args.role, ttl_seconds=args.ttl, name=args.name, email=args.email))
        return 0

    parser.error("unsupported command")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
