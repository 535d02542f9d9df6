import pytest

from funnel_lab.services.experiments.assignment import choose_variant


async def create_experiment(client, **overrides):
    payload = {"name": "AI policy digest", "hypothesis": "Summaries reduce drop-off"}
    payload.update(overrides)
    response = await client.post("/api/v1/experiments", json=payload)
    assert response.status_code == 201
    return response.json()


async def start_experiment(client, experiment_id):
    response = await client.post(
        f"/api/v1/experiments/{experiment_id}/status", json={"status": "running"}
    )
    assert response.status_code == 200
    return response.json()


class TestExperimentCrud:
    @pytest.mark.asyncio
    async def test_create_and_get(self, client):
        created = await create_experiment(client, confidence_level=95, control_percent=40)

        assert created["id"].startswith("exp_")
        assert created["status"] == "draft"
        assert created["control_percent"] == 40
        assert created["confidence_level"] == pytest.approx(0.95)

        response = await client.get(f"/api/v1/experiments/{created['id']}")
        assert response.status_code == 200
        assert response.json()["name"] == "AI policy digest"

    @pytest.mark.asyncio
    async def test_create_validation(self, client):
        response = await client.post(
            "/api/v1/experiments", json={"name": "Bad split", "control_percent": 120}
        )
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_get_missing(self, client):
        response = await client.get("/api/v1/experiments/exp_missing")
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_list_with_status_filter(self, client):
        first = await create_experiment(client, name="First")
        await create_experiment(client, name="Second")
        await start_experiment(client, first["id"])

        response = await client.get("/api/v1/experiments", params={"status": "running"})

        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 1
        assert data["experiments"][0]["id"] == first["id"]

    @pytest.mark.asyncio
    async def test_patch_draft_only(self, client):
        created = await create_experiment(client)

        response = await client.patch(
            f"/api/v1/experiments/{created['id']}", json={"traffic_percent": 20}
        )
        assert response.status_code == 200
        assert response.json()["traffic_percent"] == 20

        await start_experiment(client, created["id"])
        response = await client.patch(
            f"/api/v1/experiments/{created['id']}", json={"traffic_percent": 50}
        )
        assert response.status_code == 409


class TestStatusTransitions:
    @pytest.mark.asyncio
    async def test_lifecycle(self, client):
        created = await create_experiment(client)
        experiment_id = created["id"]

        running = await start_experiment(client, experiment_id)
        assert running["status"] == "running"
        assert running["start_date"] is not None

        for status in ["paused", "running", "completed"]:
            response = await client.post(
                f"/api/v1/experiments/{experiment_id}/status", json={"status": status}
            )
            assert response.status_code == 200
            assert response.json()["status"] == status

        assert response.json()["end_date"] is not None

    @pytest.mark.asyncio
    async def test_draft_to_completed_rejected(self, client):
        created = await create_experiment(client)

        response = await client.post(
            f"/api/v1/experiments/{created['id']}/status", json={"status": "completed"}
        )

        assert response.status_code == 409

    @pytest.mark.asyncio
    async def test_unknown_status(self, client):
        created = await create_experiment(client)

        response = await client.post(
            f"/api/v1/experiments/{created['id']}/status", json={"status": "archived"}
        )

        assert response.status_code == 422


class TestAssignmentEndpoints:
    @pytest.mark.asyncio
    async def test_assign_is_sticky(self, client):
        created = await create_experiment(client)
        await start_experiment(client, created["id"])
        url = f"/api/v1/experiments/{created['id']}/assign"

        first = await client.post(url, json={"session_id": "sess_42", "user_id": "u1"})
        second = await client.post(url, json={"session_id": "sess_42"})

        assert first.status_code == 200
        assert first.json()["variant_id"] == choose_variant("sess_42", 50)
        assert first.json()["already_assigned"] is False
        assert second.json()["variant_id"] == first.json()["variant_id"]
        assert second.json()["already_assigned"] is True

    @pytest.mark.asyncio
    async def test_assign_unknown_experiment_serves_control(self, client):
        response = await client.post(
            "/api/v1/experiments/exp_missing/assign", json={"session_id": "sess_1"}
        )

        assert response.status_code == 200
        assert response.json() == {
            "experiment_id": "exp_missing",
            "session_id": "sess_1",
            "variant_id": "control",
            "already_assigned": False,
        }

    @pytest.mark.asyncio
    async def test_exposure_and_stats(self, client):
        created = await create_experiment(client)
        experiment_id = created["id"]
        await start_experiment(client, experiment_id)

        sessions = [f"sess_{i}" for i in range(10)]
        for session_id in sessions:
            await client.post(
                f"/api/v1/experiments/{experiment_id}/assign", json={"session_id": session_id}
            )

        url = f"/api/v1/experiments/{experiment_id}/exposure"
        first = await client.post(url, json={"session_id": "sess_0"})
        repeat = await client.post(url, json={"session_id": "sess_0"})

        assert first.json()["recorded"] is True
        assert repeat.json()["recorded"] is False

        response = await client.get(f"/api/v1/experiments/{experiment_id}/stats")
        assert response.status_code == 200
        variants = response.json()["variants"]
        assert sum(v["total_assigned"] for v in variants) == 10
        assert sum(v["total_exposed"] for v in variants) == 1

    @pytest.mark.asyncio
    async def test_stats_missing_experiment(self, client):
        response = await client.get("/api/v1/experiments/exp_missing/stats")
        assert response.status_code == 404


class TestAnalysisEndpoint:
    @pytest.mark.asyncio
    async def test_analysis(self, client):
        created = await create_experiment(client)
        experiment_id = created["id"]
        await start_experiment(client, experiment_id)

        for i in range(30):
            session_id = f"sess_{i}"
            assigned = await client.post(
                f"/api/v1/experiments/{experiment_id}/assign", json={"session_id": session_id}
            )
            variant = assigned.json()["variant_id"]
            if i % 3 == 0:
                await client.post(
                    "/api/v1/tracking/events",
                    json={
                        "event_name": "pay_success",
                        "session_id": session_id,
                        "experiment_id": experiment_id,
                        "variant_id": variant,
                    },
                )

        response = await client.get(f"/api/v1/experiments/{experiment_id}/analysis")

        assert response.status_code == 200
        data = response.json()
        assert data["experiment_id"] == experiment_id
        assert data["status"] == "running"
        assert data["conversion_event"] == "pay_success"
        assert data["lift"]["control_users"] + data["lift"]["treatment_users"] == 30
        assert data["lift"]["control_conversions"] + data["lift"]["treatment_conversions"] == 10
        assert "passed" in data["srm"]
        assert isinstance(data["guardrail_warnings"], list)

    @pytest.mark.asyncio
    async def test_analysis_missing_experiment(self, client):
        response = await client.get("/api/v1/experiments/exp_missing/analysis")
        assert response.status_code == 404
