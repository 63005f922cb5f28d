"""
Test suite for approval instances

Tests workflow start, idempotency, lazy approver assignment, approver
fallback, optional step filtering, reset and pending approval queries.
"""

import logging
import pytest
import tempfile
from datetime import timedelta
from pathlib import Path

from procurement_approvals.approvals import ActionStatus, InstanceStatus
from procurement_approvals.directory import InMemoryActorDirectory
from procurement_approvals.engine import ApprovalEngine
from procurement_approvals.exceptions import (
    InvalidStateError, NotFoundError, UpstreamUnavailableError
)
from procurement_approvals.notifications import RecordingNotifier
from procurement_approvals.ports import ActorDirectory
from procurement_approvals.roles import Role
from procurement_approvals.storage import SQLiteStorage
from procurement_approvals.templates import ACTIONS_TABLE, EntityType


class UnreachableDirectory(ActorDirectory):
    def find_active_user_with_role(self, role):
        raise UpstreamUnavailableError("connection refused")


class TestStartWorkflow:
    """Test starting approval workflows"""

    def test_start_assigns_first_step(self, engine, notifier, clock):
        instance = engine.start_workflow("VENDOR", 42, "default-vendor", "7")

        assert instance.status == InstanceStatus.IN_PROGRESS
        assert instance.current_step_index == 1
        assert instance.total_steps == 3
        assert instance.entity_type == EntityType.VENDOR
        assert instance.entity_id == "42"
        assert instance.initiator_id == "7"
        # 24 + 48 + 72 hours across the vendor steps
        assert instance.sla_deadline == clock.now + timedelta(hours=144)

        actions = engine.instances.get_actions(instance.id)
        assert [a.step_sequence for a in actions] == [1, 2, 3]
        assert all(a.status == ActionStatus.PENDING for a in actions)

        first, second, third = actions
        assert first.approver_id == "officer-1"
        assert first.assigned_at == clock.now
        assert first.sla_deadline == clock.now + timedelta(hours=24)
        assert second.approver_id is None
        assert third.approver_id is None

        assert len(notifier.assigned) == 1
        user_id, context = notifier.assigned[0]
        assert user_id == "officer-1"
        assert context.action_id == first.id
        assert context.required_role == Role.OFFICER

    def test_start_is_idempotent(self, engine, storage, notifier):
        first = engine.start_workflow("VENDOR", 42, "default-vendor", "7")
        second = engine.start_workflow("vendor", "42", "default-vendor", "8")

        assert second.id == first.id
        assert second.initiator_id == "7"
        assert storage.count(ACTIONS_TABLE) == 3
        assert len(notifier.assigned) == 1

    def test_concurrent_start_returns_winner(self, engine, storage, monkeypatch):
        winner = engine.start_workflow("RFQ", "R-1", "default-rfq", "7")

        # the losing caller's existence check ran before the winner committed
        manager = engine.instances
        real_lookup = manager.get_instance_for_entity
        calls = []

        def stale_lookup(entity_type, entity_id):
            calls.append(entity_id)
            if len(calls) == 1:
                return None
            return real_lookup(entity_type, entity_id)

        monkeypatch.setattr(manager, "get_instance_for_entity", stale_lookup)

        loser = engine.start_workflow("RFQ", "R-1", "default-rfq", "8")

        assert loser.id == winner.id
        assert storage.count(ACTIONS_TABLE) == 3

    def test_unknown_template(self, engine):
        with pytest.raises(NotFoundError):
            engine.start_workflow("VENDOR", 1, "no-such-template", "7")

        assert engine.get_instance_for_entity("VENDOR", 1) is None

    def test_optional_steps_filtered_by_value(self, engine):
        engine.catalog.seed_default_templates()

        small = engine.start_workflow(
            "VENDOR_QUALIFICATION", "VQ-1", "vendor-qualification-workflow", "7",
            entity_data={"value": 20000}
        )
        medium = engine.start_workflow(
            "VENDOR_QUALIFICATION", "VQ-2", "vendor-qualification-workflow", "7",
            entity_data={"value": 75000}
        )
        large = engine.start_workflow(
            "VENDOR_QUALIFICATION", "VQ-3", "vendor-qualification-workflow", "7",
            entity_data={"value": 150000}
        )
        unknown = engine.start_workflow(
            "VENDOR_QUALIFICATION", "VQ-4", "vendor-qualification-workflow", "7"
        )

        assert small.step_sequences == [1, 2]
        assert medium.step_sequences == [1, 2, 3]
        assert large.step_sequences == [1, 2, 3, 4]
        assert unknown.total_steps == 4
        assert large.context["value"] == "150000"

    def test_submit_selects_template(self, engine):
        instance = engine.submit("CONTRACT", "C-9", {"value": 1000}, "7")

        assert instance.workflow_id == "default-contract"
        assert engine.catalog.get_template("default-contract") is not None


class TestApproverResolution:
    """Test fallback when no approver can be resolved"""

    def test_no_user_for_role_falls_back_to_actor(self, storage, notifier, clock, caplog):
        engine = ApprovalEngine(storage, InMemoryActorDirectory(), notifier, clock=clock)

        with caplog.at_level(logging.WARNING, logger="procurement_approvals"):
            instance = engine.start_workflow("VENDOR", 1, "default-vendor", "initiator-7")

        action = engine.instances.get_actions(instance.id)[0]
        assert action.approver_id == "initiator-7"
        assert instance.status == InstanceStatus.IN_PROGRESS

        fallbacks = [r for r in caplog.records if getattr(r, "action", None) == "approver_fallback_used"]
        assert len(fallbacks) == 1
        assert "ApproverFallbackUsed" in fallbacks[0].getMessage()

    def test_directory_outage_does_not_block_start(self, storage, notifier, clock):
        engine = ApprovalEngine(storage, UnreachableDirectory(), notifier, clock=clock)

        instance = engine.start_workflow("VENDOR", 1, "default-vendor", "initiator-7")

        assert instance.current_step_index == 1
        assert engine.instances.get_actions(instance.id)[0].approver_id == "initiator-7"

    def test_inactive_user_skipped(self, directory, engine):
        directory.deactivate_user("officer-1")

        instance = engine.start_workflow("VENDOR", 1, "default-vendor", "7")

        assert engine.instances.get_actions(instance.id)[0].approver_id == "7"


class TestAdvance:
    """Test the guard rails on advancing"""

    def test_cannot_advance_past_pending_step(self, engine):
        instance = engine.start_workflow("VENDOR", 1, "default-vendor", "7")

        with pytest.raises(InvalidStateError, match="has not been approved"):
            engine.advance_to_next_step(instance.id, "7")

        assert engine.instances.get_instance(instance.id).current_step_index == 1

    def test_cannot_advance_terminal_instance(self, engine):
        instance = engine.start_workflow("VENDOR", 1, "default-vendor", "7")
        step = engine.instances.get_actions(instance.id)[0]
        engine.reject_step(instance.id, step.id, "officer-1", "no")

        with pytest.raises(InvalidStateError, match="REJECTED"):
            engine.advance_to_next_step(instance.id, "7")

    def test_advance_unknown_instance(self, engine):
        with pytest.raises(NotFoundError):
            engine.advance_to_next_step("missing", "7")


class TestQueries:

    def test_workflow_status(self, engine):
        instance = engine.start_workflow("RFQ", "R-1", "default-rfq", "7")

        view = engine.get_workflow_status(instance.id)

        assert view.instance.id == instance.id
        assert view.template.id == "default-rfq"
        assert [a.step_name for a in view.actions] == [
            "Technical Evaluation", "Commercial Evaluation", "Manager Approval"
        ]

        with pytest.raises(NotFoundError):
            engine.get_workflow_status("missing")

    def test_pending_approvals(self, engine, clock):
        first = engine.start_workflow("VENDOR", 1, "default-vendor", "7")
        clock.advance(hours=1)
        engine.start_workflow("RFQ", 2, "default-rfq", "7")

        pending = engine.get_pending_approvals("officer-1")

        assert len(pending) == 2
        assert pending[0].instance_id == first.id
        assert pending[0].sla_deadline <= pending[1].sla_deadline
        assert engine.get_pending_approvals("manager-1") == []

    def test_pending_excludes_terminal_instances(self, engine):
        instance = engine.start_workflow("VENDOR", 1, "default-vendor", "7")
        step = engine.instances.get_actions(instance.id)[0]
        engine.reject_step(instance.id, step.id, "officer-1")

        assert engine.get_pending_approvals("officer-1") == []

    def test_list_instances(self, engine, clock):
        vendor = engine.start_workflow("VENDOR", 1, "default-vendor", "7")
        clock.advance(minutes=1)
        rfq = engine.start_workflow("RFQ", 2, "default-rfq", "7")

        assert [i.id for i in engine.list_instances()] == [rfq.id, vendor.id]
        assert [i.id for i in engine.list_instances(entity_type=EntityType.VENDOR)] == [vendor.id]
        assert engine.list_instances(status=InstanceStatus.APPROVED) == []


class TestResetWorkflow:

    def test_reset_replaces_instance_and_actions(self, engine, storage):
        original = engine.start_workflow("VENDOR", 1, "default-vendor", "7")
        step = engine.instances.get_actions(original.id)[0]
        engine.reject_step(original.id, step.id, "officer-1", "try again")

        fresh = engine.reset_workflow("VENDOR", 1, "default-rfq", "7")

        assert fresh.id != original.id
        assert fresh.status == InstanceStatus.IN_PROGRESS
        assert fresh.workflow_id == "default-rfq"
        assert engine.instances.get_instance(original.id) is None
        assert storage.find(ACTIONS_TABLE, {"instance_id": original.id}) == []
        assert engine.get_instance_for_entity("VENDOR", 1).id == fresh.id

    def test_reset_without_existing_instance(self, engine):
        instance = engine.reset_workflow("CONTRACT", "C-1", "default-contract", "7")
        assert instance.current_step_index == 1


class TestSQLiteBackend:
    """Full flow against the SQLite backend"""

    @pytest.fixture
    def sqlite_engine(self, directory, clock):
        with tempfile.TemporaryDirectory() as temp_dir:
            storage = SQLiteStorage(Path(temp_dir) / "approvals.db")
            engine = ApprovalEngine(storage, directory, RecordingNotifier(), clock=clock)
            yield engine
            engine.close()

    def test_full_approval_on_sqlite(self, directory, clock):
        with tempfile.TemporaryDirectory() as temp_dir:
            storage = SQLiteStorage(Path(temp_dir) / "approvals.db")
            engine = ApprovalEngine(storage, directory, RecordingNotifier(), clock=clock)

            instance = engine.start_workflow("VENDOR", 42, "default-vendor", "7")
            assert engine.start_workflow("VENDOR", 42, "default-vendor", "7").id == instance.id

            for approver in ("officer-1", "manager-1", "director-1"):
                step = engine.get_pending_approvals(approver)[0]
                instance = engine.approve_step(instance.id, step.id, approver, "ok")

            assert instance.status == InstanceStatus.APPROVED
            assert instance.completed_at == clock.now
            storage.close()

    def test_unknown_template_on_fresh_database(self, sqlite_engine):
        with pytest.raises(NotFoundError):
            sqlite_engine.start_workflow("VENDOR", 1, "no-such-template", "7")

        instance = sqlite_engine.start_workflow("VENDOR", 2, "default-vendor", "7")

        assert instance.status == InstanceStatus.IN_PROGRESS
        assert sqlite_engine.get_instance_for_entity("VENDOR", 1) is None

    def test_rejection_on_sqlite(self, sqlite_engine):
        instance = sqlite_engine.start_workflow("VENDOR", 3, "default-vendor", "7")
        step = sqlite_engine.get_pending_approvals("officer-1")[0]

        instance = sqlite_engine.reject_step(instance.id, step.id, "officer-1", "no")
        assert instance.status == InstanceStatus.REJECTED

        with pytest.raises(InvalidStateError):
            sqlite_engine.approve_step(instance.id, step.id, "officer-1")
        assert sqlite_engine.get_pending_approvals("manager-1") == []

    def test_escalation_on_sqlite(self, sqlite_engine):
        instance = sqlite_engine.start_workflow("VENDOR", 4, "default-vendor", "7")
        step = sqlite_engine.get_pending_approvals("officer-1")[0]

        result = sqlite_engine.escalate_step(step.id, "stalled", "ops-1")

        assert result.escalated_step.status == ActionStatus.ESCALATED
        assert result.new_step.required_role == Role.MANAGER
        assert result.new_step.approver_id == "manager-1"

        with pytest.raises(InvalidStateError):
            sqlite_engine.escalate_step(step.id, "again", "ops-1")

        instance = sqlite_engine.approve_step(instance.id, result.new_step.id, "manager-1")
        assert instance.current_step_index == 2
