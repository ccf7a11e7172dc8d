import argparse

from loguru import logger

from app.core.config import get_settings
from app.db import init_db
from app.repositories import CycleStateRepository, LedgerRepository
from ingestion.service import session_scope


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Clear the trading bot's cycle state")
    parser.add_argument(
        "--portfolio",
        action="store_true",
        help="Also delete positions, cycle logs and activities and restore the initial balance",
    )
    parser.add_argument(
        "--initial-balance",
        type=float,
        default=None,
        help="Starting balance to restore with --portfolio (defaults to INITIAL_BALANCE)",
    )
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    settings = get_settings()
    init_db()

    with session_scope() as session:
        CycleStateRepository(session).clear()
        logger.info("Cleared throttle, cycle lock and analyzed cache")
        if args.portfolio:
            ledger = LedgerRepository(session, initial_balance=settings.initial_balance)
            account = ledger.reset_portfolio(initial_balance=args.initial_balance)
            logger.info("Portfolio wiped; balance restored to {:.2f}", float(account.balance))


if __name__ == "__main__":
    main()
