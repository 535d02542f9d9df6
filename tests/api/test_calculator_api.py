import pytest


class TestSampleSize:
    @pytest.mark.asyncio
    async def test_reference_example(self, client):
        response = await client.post(
            "/api/v1/calculator/sample-size",
            json={"mde_percent": 1.5, "confidence_level": 95, "power": 80, "baseline_rate": 0.07},
        )

        assert response.status_code == 200
        assert response.json() == {"sample_size_per_arm": 4537, "total_sample_size": 9074}

    @pytest.mark.asyncio
    async def test_unsupported_confidence(self, client):
        response = await client.post(
            "/api/v1/calculator/sample-size",
            json={"mde_percent": 1.5, "confidence_level": 97, "power": 80, "baseline_rate": 0.07},
        )

        assert response.status_code == 422
        assert "confidence_level" in response.json()["detail"]


class TestLift:
    @pytest.mark.asyncio
    async def test_lift(self, client):
        response = await client.post(
            "/api/v1/calculator/lift",
            json={
                "control": {"users": 5234, "conversions": 367},
                "treatment": {"users": 5189, "conversions": 402},
            },
        )

        assert response.status_code == 200
        data = response.json()
        assert data["relative_lift"] == pytest.approx(0.105, abs=1e-3)
        assert data["significant"] is False

    @pytest.mark.asyncio
    async def test_conversions_above_users(self, client):
        response = await client.post(
            "/api/v1/calculator/lift",
            json={
                "control": {"users": 10, "conversions": 11},
                "treatment": {"users": 10, "conversions": 1},
            },
        )

        assert response.status_code == 422


class TestSRM:
    @pytest.mark.asyncio
    async def test_default_split(self, client):
        response = await client.post(
            "/api/v1/calculator/srm",
            json={"observed_counts": {"control": 5234, "treatment": 5189}},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["passed"] is True
        assert data["alpha"] == 0.01
        assert data["chi2"] == pytest.approx(0.194, abs=1e-3)

    @pytest.mark.asyncio
    async def test_unknown_variant(self, client):
        response = await client.post(
            "/api/v1/calculator/srm",
            json={"observed_counts": {"control": 10, "holdout": 10}},
        )

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_negative_count_rejected(self, client):
        response = await client.post(
            "/api/v1/calculator/srm",
            json={"observed_counts": {"control": -5, "treatment": 5}},
        )

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_traffic_in_zero_weight_arm(self, client):
        response = await client.post(
            "/api/v1/calculator/srm",
            json={
                "observed_counts": {"control": 100, "treatment": 5},
                "allocation_ratio": {"control": 100, "treatment": 0},
            },
        )

        assert response.status_code == 200
        data = response.json()
        assert data["chi2"] is None
        assert data["p_value"] == 0.0
        assert data["passed"] is False
