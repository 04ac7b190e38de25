"""Integration tests for generation job API endpoints.

Tests the job endpoints including:
- POST /jobs - Enqueue with credit reservation (402 when the balance is short)
- POST /jobs/{job_id}/cancel - Cancel a queued job
- GET /jobs - Snapshot by job id or mockup id
- GET /jobs/progress - Aggregated batch progress
"""

from uuid import uuid4

import pytest
from httpx import ASGITransport, AsyncClient

from mockgen.models.generation_job import JobStatus


async def balance(uow_factory, external_user_id: str = "user_1") -> int:
    async with await uow_factory() as uow:
        user = await uow.users.get_by_external_id(external_user_id)
        return user.credits_remaining


@pytest.mark.asyncio
class TestEnqueueJob:
    """Test POST /jobs."""

    async def test_enqueue_reserves_credits(self, test_client, seed_user, uow_factory):
        # Arrange
        await seed_user(credits=100, subscription_tier="pro")

        # Act
        response = await test_client.post(
            "/jobs",
            json={
                "user_id": "user_1",
                "prompt": "Minimalist tote bag on a linen background",
                "quality": "premium",
                "mockup_type": "tote",
                "params": {"seed": 42},
            },
        )

        # Assert
        assert response.status_code == 201
        data = response.json()
        assert data["job"]["status"] == "queued"
        assert data["job"]["attempts"] == 0
        assert data["job"]["max_attempts"] == 3
        assert data["job"]["estimated_credits"] == 15
        assert data["job"]["priority"] == 60
        assert data["mockup"]["status"] == "pending"
        assert data["mockup"]["mockup_type"] == "tote"
        assert await balance(uow_factory) == 85

    async def test_insufficient_credits_returns_402(self, test_client, seed_user, uow_factory):
        await seed_user(credits=5)

        response = await test_client.post(
            "/jobs", json={"user_id": "user_1", "prompt": "Poster in a gallery"}
        )

        assert response.status_code == 402
        assert response.json()["detail"] == {
            "error": "Insufficient credits",
            "required": 10,
            "available": 5,
        }
        assert await balance(uow_factory) == 5
        async with await uow_factory() as uow:
            assert await uow.jobs.count_by_status() == {}

    async def test_unknown_user_returns_404(self, test_client):
        response = await test_client.post(
            "/jobs", json={"user_id": "nobody", "prompt": "Poster in a gallery"}
        )

        assert response.status_code == 404

    @pytest.mark.parametrize(
        "payload",
        [
            {"user_id": "user_1", "prompt": ""},
            {"user_id": "user_1", "prompt": "x" * 1001},
            {"user_id": "user_1", "prompt": "Mug", "variations": 0},
            {"user_id": "user_1", "prompt": "Mug", "quality": "cinematic"},
        ],
        ids=["empty-prompt", "long-prompt", "zero-variations", "unknown-quality"],
    )
    async def test_invalid_request_returns_422(self, test_client, payload):
        response = await test_client.post("/jobs", json=payload)

        assert response.status_code == 422

    async def test_rate_limited(self, build_app, seed_user):
        await seed_user(credits=1000)
        app = build_app(JOBS_RATE_LIMIT_MAX_REQUESTS=1)

        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            first = await client.post("/jobs", json={"user_id": "user_1", "prompt": "Mug"})
            second = await client.post("/jobs", json={"user_id": "user_1", "prompt": "Mug"})

        assert first.status_code == 201
        assert second.status_code == 429
        assert "Retry-After" in second.headers


@pytest.mark.asyncio
class TestCancelJob:
    """Test POST /jobs/{job_id}/cancel."""

    async def test_cancel_queued_job_refunds(self, test_client, seed_user, uow_factory):
        await seed_user(credits=100)
        created = await test_client.post("/jobs", json={"user_id": "user_1", "prompt": "Mug"})
        job_id = created.json()["job"]["id"]

        response = await test_client.post(f"/jobs/{job_id}/cancel")

        assert response.status_code == 200
        data = response.json()
        assert data["job"]["status"] == "cancelled"
        assert data["job"]["cancelled_at"] is not None
        assert data["mockup"]["status"] == "cancelled"
        assert await balance(uow_factory) == 100

    async def test_cancel_twice_returns_409(self, test_client, seed_user, uow_factory):
        await seed_user(credits=100)
        created = await test_client.post("/jobs", json={"user_id": "user_1", "prompt": "Mug"})
        job_id = created.json()["job"]["id"]
        await test_client.post(f"/jobs/{job_id}/cancel")

        response = await test_client.post(f"/jobs/{job_id}/cancel")

        assert response.status_code == 409
        assert await balance(uow_factory) == 100

    async def test_cancel_unknown_job_returns_404(self, test_client):
        response = await test_client.post(f"/jobs/{uuid4()}/cancel")

        assert response.status_code == 404


@pytest.mark.asyncio
class TestGetJob:
    """Test GET /jobs."""

    async def test_lookup_by_job_and_mockup_id(self, test_client, seed_user, seed_job):
        user = await seed_user()
        job = await seed_job(user)

        by_job = await test_client.get("/jobs", params={"jobId": str(job.id)})
        by_mockup = await test_client.get("/jobs", params={"mockupId": str(job.mockup_id)})

        assert by_job.status_code == 200
        assert by_mockup.status_code == 200
        assert by_job.json()["job"]["id"] == str(job.id)
        assert by_mockup.json()["job"]["id"] == str(job.id)
        assert by_job.json()["mockup"]["id"] == str(job.mockup_id)

    async def test_missing_ids_returns_400(self, test_client):
        response = await test_client.get("/jobs")

        assert response.status_code == 400

    async def test_unknown_job_returns_404(self, test_client):
        response = await test_client.get("/jobs", params={"jobId": str(uuid4())})

        assert response.status_code == 404


@pytest.mark.asyncio
class TestProgress:
    """Test GET /jobs/progress."""

    async def test_aggregates_batch(self, test_client, seed_user, seed_job, uow_factory, utc_clock):
        user = await seed_user()
        done = await seed_job(user)
        running = await seed_job(user)
        waiting = await seed_job(user)
        async with await uow_factory() as uow:
            job = await uow.jobs.get_by_id(done.id)
            await uow.jobs.claim(job, utc_clock())
            job.mark_completed(utc_clock())
            await uow.jobs.save_transition(job, JobStatus.PROCESSING, 1)
            job = await uow.jobs.get_by_id(running.id)
            await uow.jobs.claim(job, utc_clock())

        response = await test_client.get(
            "/jobs/progress",
            params={"jobIds": f"{done.id},{running.id}", "mockupIds": str(waiting.mockup_id)},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 3
        assert data["overall_progress"] == 50  # (100 + 50 + 0) / 3
        assert data["counts"]["completed"] == 1
        assert data["counts"]["processing"] == 1
        assert data["counts"]["queued"] == 1
        assert data["all_terminal"] is False
        progress = {entry["job_id"]: entry["progress"] for entry in data["jobs"]}
        assert progress == {str(done.id): 100, str(running.id): 50, str(waiting.id): 0}

    async def test_unknown_ids_are_absent(self, test_client):
        response = await test_client.get("/jobs/progress", params={"jobIds": str(uuid4())})

        assert response.status_code == 200
        assert response.json()["total"] == 0
        assert response.json()["all_terminal"] is False

    @pytest.mark.parametrize("params", [{}, {"jobIds": "not-a-uuid"}, {"jobIds": ","}])
    async def test_invalid_ids_return_400(self, test_client, params):
        response = await test_client.get("/jobs/progress", params=params)

        assert response.status_code == 400
