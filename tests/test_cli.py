"""CLI command tests.

Tests cover:
- Argument parsing for reconcile_jobs and grant_credits
- One reconciliation pass, with and without --dry-run
- Granting credits against the test database
"""

import pytest

from forge3d.cli import grant_credits, reconcile_jobs
from forge3d.models.generation_request import GenerationStatus


def test_reconcile_args_defaults():
    args = reconcile_jobs.parse_args([])

    assert args.limit == 100
    assert args.dry_run is False
    assert args.verbose is False


def test_grant_args():
    args = grant_credits.parse_args(["user-9", "5", "--description", "support ticket"])

    assert args.user_id == "user-9"
    assert args.credits == 5
    assert args.description == "support ticket"


@pytest.mark.asyncio
async def test_run_reconcile_completes_jobs(
    reconciler, orchestrator, uow_factory, funded_user, make_photos, provider
):
    await funded_user("user-1", balance=1)
    provider.job_ids = ["abc"]
    request = await orchestrator.start("user-1", make_photos())
    provider.succeed("abc")

    counts = await reconcile_jobs.run_reconcile(
        reconciler, uow_factory, limit=10, dry_run=False, timeout_seconds=3600
    )

    assert counts == {"recovered": 0, "expired": 0, "completed": 1}
    async with await uow_factory() as uow:
        stored = await uow.generation_requests.get_by_id(request.id)
    assert stored.status == GenerationStatus.COMPLETED


@pytest.mark.asyncio
async def test_dry_run_changes_nothing(
    reconciler, orchestrator, uow_factory, funded_user, make_photos, provider, capsys
):
    await funded_user("user-1", balance=1)
    provider.job_ids = ["abc"]
    request = await orchestrator.start("user-1", make_photos())
    provider.succeed("abc")

    counts = await reconcile_jobs.run_reconcile(
        reconciler, uow_factory, limit=10, dry_run=True, timeout_seconds=3600
    )

    assert counts == {"succeeded": 1}
    assert "abc" in capsys.readouterr().out
    async with await uow_factory() as uow:
        stored = await uow.generation_requests.get_by_id(request.id)
    assert stored.status == GenerationStatus.SUBMITTED


@pytest.mark.asyncio
async def test_grant_credits_command(session_factory, uow_factory, database_url, monkeypatch, capsys):
    monkeypatch.setenv("DATABASE_URL", database_url)
    monkeypatch.setenv("DEFAULT_CREDIT_BALANCE", "2")

    exit_code = await grant_credits.async_main(["user-9", "3"])

    assert exit_code == 0
    assert "user-9: balance 5" in capsys.readouterr().out
    async with await uow_factory() as uow:
        account = await uow.credits.get_by_user("user-9")
    assert account.balance == 5


@pytest.mark.asyncio
async def test_grant_credits_rejects_non_positive(capsys):
    exit_code = await grant_credits.async_main(["user-9", "0"])

    assert exit_code == 1
    assert "must be positive" in capsys.readouterr().err
