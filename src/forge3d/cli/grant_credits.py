"""CLI command for granting generation credits to a user.

Usage:
    python -m forge3d.cli.grant_credits USER_ID CREDITS [--description TEXT]

Examples:
    # Give a user five more generations
    python -m forge3d.cli.grant_credits user_123 5 --description "support ticket 42"
"""

import asyncio
import sys
from argparse import ArgumentParser, Namespace
from typing import Optional, Sequence

import structlog

from forge3d.core import timezone  # noqa: F401
from forge3d.core.config import Settings, configure_logging
from forge3d.core.database import setup_db_session
from forge3d.uow import create_uow_factory

logger = structlog.get_logger()


def parse_args(argv: Optional[Sequence[str]] = None) -> Namespace:
    """Parse command-line arguments."""
    parser = ArgumentParser(description="Grant generation credits to a user")

    parser.add_argument("user_id", help="Identity of the account holder")
    parser.add_argument("credits", type=int, help="Number of credits to add (positive)")
    parser.add_argument("--description", default="operator grant", help="Note stored on the transaction")

    return parser.parse_args(argv)


async def async_main(argv: Optional[Sequence[str]] = None) -> int:
    """Main CLI entry point (async).

    Returns:
        Exit code: 0 (success), 1 (error)
    """
    args = parse_args(argv)

    if args.credits <= 0:
        print("Error: credits must be positive", file=sys.stderr)
        return 1

    settings = Settings()  # type: ignore[call-arg]
    configure_logging(settings)

    session_factory = setup_db_session(settings.database_url, settings.db_pool_size)
    uow_factory = create_uow_factory(session_factory)

    async with await uow_factory() as uow:
        account = await uow.credits.grant(
            args.user_id,
            args.credits,
            default_balance=settings.default_credit_balance,
            description=args.description,
        )

    logger.info("credits.granted", user_id=args.user_id, credits=args.credits, balance=account.balance)
    print(f"{args.user_id}: balance {account.balance}")
    return 0


def main() -> None:
    """Synchronous entry point for CLI."""
    sys.exit(asyncio.run(async_main()))


if __name__ == "__main__":
    main()
