"""
Shared fixtures for the approval engine tests
"""

import pytest
from datetime import datetime, timezone, timedelta

from procurement_approvals.directory import InMemoryActorDirectory
from procurement_approvals.engine import ApprovalEngine
from procurement_approvals.notifications import RecordingNotifier
from procurement_approvals.ports import UserRef
from procurement_approvals.roles import Role
from procurement_approvals.storage import InMemoryStorage


class FakeClock:
    """Settable clock injected into the engine"""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock(datetime(2025, 3, 3, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def storage():
    """Create in-memory storage for testing"""
    return InMemoryStorage()


@pytest.fixture
def directory():
    """One active user per role"""
    return InMemoryActorDirectory({
        Role.OFFICER: [UserRef("officer-1", "Olive Officer", "olive@example.com")],
        Role.MANAGER: [UserRef("manager-1", "Max Manager", "max@example.com")],
        Role.DIRECTOR: [UserRef("director-1", "Dana Director", "dana@example.com")],
    })


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def engine(storage, directory, notifier, clock):
    """Approval engine wired to in-memory collaborators"""
    return ApprovalEngine(storage, directory, notifier, clock=clock)
