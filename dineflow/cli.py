"""
CLI del sweep de facturación (para cron)

    dineflow-sweep
    dineflow-sweep --date 2024-03-01
"""
import argparse
import asyncio
import json
import logging
import sys
from datetime import date

from dineflow.core.config import settings
from dineflow.core.database import SessionLocal, init_db
from dineflow.core.logging_config import setup_logging
from dineflow.services.billing_sweep import BillingSweepDriver
from dineflow.services.payment_gateway import get_payment_gateway
from dineflow.services.subscription_store import SubscriptionStore

logger = logging.getLogger(__name__)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Ejecuta el sweep diario de suscripciones")
    parser.add_argument(
        "--date",
        type=date.fromisoformat,
        default=None,
        help="Fecha del sweep (YYYY-MM-DD). Por defecto hoy en UTC"
    )
    parser.add_argument(
        "--workers",
        type=int,
        default=None,
        help=f"Suscripciones en paralelo (default {settings.SWEEP_MAX_WORKERS})"
    )
    parser.add_argument("--log-level", default=None, help="Nivel de logging")
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    setup_logging(args.log_level)
    init_db()

    store = SubscriptionStore(SessionLocal)
    driver = BillingSweepDriver(store, get_payment_gateway(settings), settings, max_workers=args.workers)

    summary = asyncio.run(driver.run(args.date))
    print(json.dumps(summary.to_dict(), indent=2))

    # Código 1 si hubo errores inesperados, para que el cron lo note
    return 1 if summary.errors else 0


if __name__ == "__main__":
    sys.exit(main())
