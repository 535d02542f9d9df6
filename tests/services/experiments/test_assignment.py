from datetime import datetime, timezone

import pytest
import pytest_asyncio
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from funnel_lab.core.errors import PersistenceUnavailableError
from funnel_lab.models.experiment import ExperimentAssignment
from funnel_lab.models.schemas import CreateExperimentRequest
from funnel_lab.services.experiments.assignment import (
    AssignmentService,
    choose_variant,
    is_eligible,
)
from funnel_lab.services.experiments.bucketing import bucket
from funnel_lab.services.experiments.service import ExperimentService


def session_in_variant(variant: str, control_percent: int = 50, prefix: str = "sess") -> str:
    for i in range(1000):
        session_id = f"{prefix}_{i}"
        if choose_variant(session_id, control_percent) == variant:
            return session_id
    raise AssertionError(f"no session lands in {variant}")


async def count_assignments(db, experiment_id: str) -> int:
    result = await db.execute(
        select(func.count(ExperimentAssignment.id)).where(
            ExperimentAssignment.experiment_id == experiment_id
        )
    )
    return result.scalar_one()


@pytest_asyncio.fixture
async def running_experiment(db):
    service = ExperimentService(db)
    experiment = await service.create_experiment(CreateExperimentRequest(name="AI policy digest"))
    return await service.start(experiment.id)


@pytest_asyncio.fixture
async def draft_experiment(db):
    return await ExperimentService(db).create_experiment(CreateExperimentRequest(name="Draft test"))


class TestChooseVariant:
    def test_split_follows_bucket(self):
        for i in range(200):
            session_id = f"s{i}"
            expected = "control" if bucket(session_id) < 50 else "treatment"
            assert choose_variant(session_id, 50) == expected

    def test_all_control(self):
        assert all(choose_variant(f"s{i}", 100) == "control" for i in range(100))

    def test_all_treatment(self):
        assert all(choose_variant(f"s{i}", 0) == "treatment" for i in range(100))

    def test_full_traffic_is_always_eligible(self):
        assert all(is_eligible(f"s{i}", "exp_1", 100) for i in range(100))

    def test_zero_traffic_is_never_eligible(self):
        assert not any(is_eligible(f"s{i}", "exp_1", 0) for i in range(100))


class TestAssign:
    @pytest.mark.asyncio
    async def test_first_assignment_is_persisted(self, db, running_experiment):
        service = AssignmentService(db)
        session_id = session_in_variant("treatment")

        result = await service.assign(running_experiment.id, session_id, user_id="u1")

        assert result.variant_id == "treatment"
        assert result.already_assigned is False

        row = await service.get_assignment(running_experiment.id, session_id)
        assert row.variant_id == "treatment"
        assert row.user_id == "u1"
        assert row.exposed is False
        assert row.assigned_at is not None

    @pytest.mark.asyncio
    async def test_assignment_is_idempotent(self, db, running_experiment):
        service = AssignmentService(db)

        first = await service.assign(running_experiment.id, "sess_repeat")
        second = await service.assign(running_experiment.id, "sess_repeat")
        third = await service.assign(running_experiment.id, "sess_repeat")

        assert first.already_assigned is False
        assert second.already_assigned is True
        assert third.already_assigned is True
        assert first.variant_id == second.variant_id == third.variant_id
        assert await count_assignments(db, running_experiment.id) == 1

    @pytest.mark.asyncio
    async def test_existing_assignment_survives_split_change(self, db, running_experiment):
        service = AssignmentService(db)
        session_id = session_in_variant("control")
        await service.assign(running_experiment.id, session_id)

        running_experiment.control_percent = 0
        await db.commit()

        result = await service.assign(running_experiment.id, session_id)
        assert result.variant_id == "control"
        assert result.already_assigned is True

    @pytest.mark.asyncio
    async def test_unknown_experiment_serves_control(self, db):
        result = await AssignmentService(db).assign("exp_missing", "sess_1")

        assert result.variant_id == "control"
        assert result.already_assigned is False
        assert await count_assignments(db, "exp_missing") == 0

    @pytest.mark.asyncio
    async def test_draft_experiment_serves_control_without_persisting(self, db, draft_experiment):
        session_id = session_in_variant("treatment")

        result = await AssignmentService(db).assign(draft_experiment.id, session_id)

        assert result.variant_id == "control"
        assert result.already_assigned is False
        assert await count_assignments(db, draft_experiment.id) == 0

    @pytest.mark.asyncio
    async def test_paused_experiment_keeps_existing_assignments(self, db, running_experiment):
        service = AssignmentService(db)
        assigned = session_in_variant("treatment")
        await service.assign(running_experiment.id, assigned)
        await ExperimentService(db).pause(running_experiment.id)

        existing = await service.assign(running_experiment.id, assigned)
        newcomer_id = session_in_variant("treatment", prefix="new")
        newcomer = await service.assign(running_experiment.id, newcomer_id)

        assert existing.variant_id == "treatment"
        assert existing.already_assigned is True
        assert newcomer.variant_id == "control"
        assert newcomer.already_assigned is False
        assert await count_assignments(db, running_experiment.id) == 1

    @pytest.mark.asyncio
    async def test_zero_traffic_excludes_everyone(self, db):
        service = ExperimentService(db)
        experiment = await service.create_experiment(
            CreateExperimentRequest(name="No traffic", traffic_percent=0)
        )
        await service.start(experiment.id)

        result = await AssignmentService(db).assign(experiment.id, session_in_variant("treatment"))

        assert result.variant_id == "control"
        assert await count_assignments(db, experiment.id) == 0

    @pytest.mark.asyncio
    async def test_concurrent_insert_returns_winner(self, db, running_experiment, monkeypatch):
        experiment_id = running_experiment.id
        session_id = session_in_variant("treatment")
        db.add(
            ExperimentAssignment(
                experiment_id=experiment_id,
                session_id=session_id,
                variant_id="control",
                assigned_at=datetime.now(timezone.utc),
                exposed=False,
            )
        )
        await db.commit()

        service = AssignmentService(db)
        real_find = service._find
        calls = {"count": 0}

        async def find_missing_first(exp_id, sid):
            calls["count"] += 1
            if calls["count"] == 1:
                return None
            return await real_find(exp_id, sid)

        monkeypatch.setattr(service, "_find", find_missing_first)

        result = await service.assign(experiment_id, session_id)

        assert result.variant_id == "control"
        assert result.already_assigned is True
        assert await count_assignments(db, experiment_id) == 1

    @pytest.mark.asyncio
    async def test_store_write_failure_fails_open(self, db, running_experiment, monkeypatch):
        experiment_id = running_experiment.id
        service = AssignmentService(db)
        session_id = session_in_variant("treatment")

        async def broken_commit():
            raise OperationalError("INSERT", {}, Exception("database is locked"))

        monkeypatch.setattr(db, "commit", broken_commit)

        result = await service.assign(experiment_id, session_id)

        assert result.variant_id == "treatment"
        assert result.already_assigned is False

    @pytest.mark.asyncio
    async def test_store_read_failure_serves_control(self, db, running_experiment, monkeypatch):
        service = AssignmentService(db)

        async def broken_find(experiment_id, session_id):
            raise OperationalError("SELECT", {}, Exception("connection refused"))

        monkeypatch.setattr(service, "_find", broken_find)

        result = await service.assign(running_experiment.id, session_in_variant("treatment"))

        assert result.variant_id == "control"
        assert result.already_assigned is False


class TestExposure:
    @pytest.mark.asyncio
    async def test_first_exposure_is_recorded_once(self, db, running_experiment):
        service = AssignmentService(db)
        await service.assign(running_experiment.id, "sess_seen")

        assert await service.mark_exposure(running_experiment.id, "sess_seen") is True
        first = await service.get_assignment(running_experiment.id, "sess_seen")
        first_exposed_at = first.exposed_at

        assert await service.mark_exposure(running_experiment.id, "sess_seen") is False
        again = await service.get_assignment(running_experiment.id, "sess_seen")

        assert again.exposed is True
        assert again.exposed_at == first_exposed_at

    @pytest.mark.asyncio
    async def test_unassigned_session_is_noop(self, db, running_experiment):
        service = AssignmentService(db)
        assert await service.mark_exposure(running_experiment.id, "sess_never_assigned") is False
        assert await count_assignments(db, running_experiment.id) == 0

    @pytest.mark.asyncio
    async def test_store_failure_raises(self, db, running_experiment, monkeypatch):
        service = AssignmentService(db)

        async def broken_execute(*args, **kwargs):
            raise OperationalError("UPDATE", {}, Exception("connection refused"))

        monkeypatch.setattr(db, "execute", broken_execute)

        with pytest.raises(PersistenceUnavailableError):
            await service.mark_exposure(running_experiment.id, "sess_1")


class TestAssignmentStats:
    @pytest.mark.asyncio
    async def test_counts_per_variant(self, db, running_experiment):
        service = AssignmentService(db)
        sessions = [f"stats_{i}" for i in range(40)]
        for session_id in sessions:
            await service.assign(running_experiment.id, session_id)

        exposed = sessions[:10]
        for session_id in exposed:
            await service.mark_exposure(running_experiment.id, session_id)

        stats = {s.variant_id: s for s in await service.get_assignment_stats(running_experiment.id)}

        expected_control = sum(1 for s in sessions if choose_variant(s, 50) == "control")
        expected_exposed_control = sum(1 for s in exposed if choose_variant(s, 50) == "control")

        total_assigned = sum(s.total_assigned for s in stats.values())
        total_exposed = sum(s.total_exposed for s in stats.values())

        assert total_assigned == 40
        assert total_exposed == 10
        if expected_control:
            assert stats["control"].total_assigned == expected_control
            assert stats["control"].total_exposed == expected_exposed_control

    @pytest.mark.asyncio
    async def test_empty_experiment(self, db, running_experiment):
        assert await AssignmentService(db).get_assignment_stats(running_experiment.id) == []
