"""Tests for the sweep trigger endpoint."""

from unittest.mock import patch

import pytest
from httpx import AsyncClient

from marketplace.config import settings
from marketplace.models.job import JobStatus

AUTH = {"Authorization": "Bearer test-cron-secret"}


@pytest.mark.asyncio
async def test_runs_sweep_with_valid_secret(
    client: AsyncClient, store, make_job, backdate, notifier, redis_mock
) -> None:
    job = await make_job(status=JobStatus.OPEN, with_provider=False)
    await backdate(job, days=40)

    with patch("marketplace.services.scheduler.get_notifier", return_value=notifier):
        resp = await client.post("/cron/expire-jobs", headers=AUTH)

    assert resp.status_code == 200
    assert resp.json() == {"ok": True, "sweep": "expire-jobs", "result": {"expired": 1}}
    assert (await store.jobs.get(job.job_id)).status == JobStatus.EXPIRED
    redis_mock.set.assert_awaited_once()
    assert redis_mock.set.await_args.args[0] == "sweep:running:expire-jobs"
    token = redis_mock.set.await_args.args[1]
    redis_mock.eval.assert_awaited_once()
    assert redis_mock.eval.await_args.args[1:] == (1, "sweep:running:expire-jobs", token)


@pytest.mark.asyncio
async def test_missing_or_wrong_secret_rejected(client: AsyncClient) -> None:
    assert (await client.post("/cron/expire-jobs")).status_code == 401
    resp = await client.post("/cron/expire-jobs", headers={"Authorization": "Bearer nope"})
    assert resp.status_code == 401


@pytest.mark.asyncio
async def test_dev_fallback_secret(client: AsyncClient) -> None:
    object.__setattr__(settings, "cron_secret", "")
    object.__setattr__(settings, "env", "development")
    resp = await client.post("/cron/reminders", headers={"Authorization": "Bearer dev-cron-secret"})
    assert resp.status_code == 200


@pytest.mark.asyncio
async def test_no_secret_outside_development_rejects_everything(client: AsyncClient) -> None:
    object.__setattr__(settings, "cron_secret", "")
    object.__setattr__(settings, "env", "production")
    resp = await client.post("/cron/reminders", headers={"Authorization": "Bearer dev-cron-secret"})
    assert resp.status_code == 401


@pytest.mark.asyncio
async def test_unknown_sweep_404(client: AsyncClient) -> None:
    resp = await client.post("/cron/delete-everything", headers=AUTH)
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_running_sweep_conflicts(client: AsyncClient, redis_mock) -> None:
    redis_mock.set.return_value = None
    resp = await client.post("/cron/release-escrow", headers=AUTH)
    assert resp.status_code == 409
    redis_mock.eval.assert_not_awaited()
