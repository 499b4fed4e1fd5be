"""CLI command for reconciling in-flight generations with their providers.

Runs the same steps as one tick of the reconciliation worker, once.

Usage:
    python -m forge3d.cli.reconcile_jobs [OPTIONS]

Examples:
    # Reconcile up to 100 in-flight generations
    python -m forge3d.cli.reconcile_jobs --limit 100

    # Show provider status without changing anything
    python -m forge3d.cli.reconcile_jobs --dry-run

    # Verbose logging
    python -m forge3d.cli.reconcile_jobs -v
"""

import asyncio
import sys
from argparse import ArgumentParser, Namespace
from typing import Optional, Sequence

import structlog

from forge3d.core import timezone  # noqa: F401
from forge3d.core.config import Settings, configure_logging
from forge3d.core.database import setup_db_session
from forge3d.models.generation_request import GenerationStatus
from forge3d.services.exceptions import ServiceError
from forge3d.services.generation.factory import build_providers
from forge3d.services.reconciler import JobReconciler, RetryPolicy
from forge3d.services.storage.r2_client import R2ObjectStore
from forge3d.uow import create_uow_factory

logger = structlog.get_logger()


def parse_args(argv: Optional[Sequence[str]] = None) -> Namespace:
    """Parse command-line arguments."""
    parser = ArgumentParser(
        description="Reconcile in-flight generations with their providers",
        epilog="Expired jobs are failed and refunded; completed models are stored",
    )

    parser.add_argument(
        "--limit",
        type=int,
        default=100,
        help="Maximum number of generations to reconcile (default: 100)",
    )

    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Print provider status without database writes",
    )

    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging (DEBUG level)",
    )

    return parser.parse_args(argv)


def build_reconciler(settings: Settings, uow_factory) -> JobReconciler:
    """Build a reconciler wired to R2 and the configured providers."""
    object_store = R2ObjectStore(
        account_id=settings.r2_account_id,
        access_key_id=settings.r2_access_key_id,
        secret_access_key=settings.r2_secret_access_key,
        photos_bucket=settings.r2_photos_bucket,
        models_bucket=settings.r2_models_bucket,
        public_photos_url=settings.r2_public_photos_url,
        public_models_url=settings.r2_public_models_url,
        download_timeout=settings.artifact_download_timeout_seconds,
    )
    return JobReconciler(
        uow_factory=uow_factory,
        providers=build_providers(settings),
        object_store=object_store,
        retry_policy=RetryPolicy(
            max_attempts=settings.status_check_max_attempts,
            base_delay=settings.status_check_base_delay_seconds,
            max_delay=settings.status_check_max_delay_seconds,
        ),
    )


async def run_reconcile(
    reconciler: JobReconciler, uow_factory, limit: int, dry_run: bool, timeout_seconds: int
) -> dict[str, int]:
    """Reconcile up to limit in-flight generations.

    Returns:
        Count per outcome name, plus "expired" and "recovered"
    """
    async with await uow_factory() as uow:
        in_flight = await uow.generation_requests.get_by_status(GenerationStatus.SUBMITTED, limit=limit)
        in_flight += await uow.generation_requests.get_by_status(
            GenerationStatus.POLLING, limit=max(limit - len(in_flight), 0)
        )

    counts: dict[str, int] = {}

    if dry_run:
        for request in in_flight:
            provider = reconciler.providers.get(request.provider or "")
            if provider is None or not request.external_job_id:
                print(f"{request.id}  {request.status.value:<10}  provider not configured")
                continue
            try:
                provider_status = await provider.get_status(request.external_job_id)
                state = provider_status.state.value
            except ServiceError as e:
                state = f"error: {e}"
            print(f"{request.id}  {request.status.value:<10}  {request.external_job_id}  {state}")
            counts[state] = counts.get(state, 0) + 1
        return counts

    counts["recovered"] = await reconciler.recover_interrupted()
    counts["expired"] = await reconciler.expire_stale(timeout_seconds)

    for request in in_flight:
        outcome = await reconciler.reconcile_with_retry(request.id)
        counts[outcome.value] = counts.get(outcome.value, 0) + 1

    return counts


async def async_main(argv: Optional[Sequence[str]] = None) -> int:
    """Main CLI entry point (async).

    Returns:
        Exit code: 0 (success), 1 (error)
    """
    args = parse_args(argv)

    settings = Settings()  # type: ignore[call-arg]

    if args.verbose:
        settings.log_level = "DEBUG"

    configure_logging(settings)

    logger.info("cli.started", limit=args.limit, dry_run=args.dry_run)

    session_factory = setup_db_session(settings.database_url, settings.db_pool_size)
    uow_factory = create_uow_factory(session_factory)
    reconciler = build_reconciler(settings, uow_factory)

    try:
        counts = await run_reconcile(
            reconciler, uow_factory, args.limit, args.dry_run, settings.job_timeout_seconds
        )
    except KeyboardInterrupt:
        logger.info("cli.interrupted")
        print("\nReconciliation interrupted by user", file=sys.stderr)
        return 130
    except Exception as e:
        logger.error(
            "cli.unexpected_error",
            error=str(e),
            error_type=type(e).__name__,
        )
        print(f"\nUnexpected error: {e}", file=sys.stderr)
        return 1

    print("\n" + "=" * 60)
    print("Reconciliation Summary")
    print("=" * 60)
    for name, count in sorted(counts.items()):
        print(f"{name}: {count}")
    if args.dry_run:
        print("\n[DRY RUN] No changes were persisted to database")
    print("=" * 60 + "\n")

    logger.info("cli.completed", **counts)
    return 0


def main() -> None:
    """Synchronous entry point for CLI."""
    sys.exit(asyncio.run(async_main()))


if __name__ == "__main__":
    main()
