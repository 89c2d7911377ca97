"""Shared test fixtures for llmvm."""

from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Optional, Set

import pytest

from llmvm.config import StackInputs
from llmvm.errors import ProvisioningError
from llmvm.providers.base import Provisioner
from llmvm.resources import Instance, Resource, ResourceStatus, StackOutputs

SSH_RANGE = "203.0.113.5/32"


@pytest.fixture
def inputs() -> StackInputs:
    """Minimal valid inputs (the reference scenario)."""
    return StackInputs(project_id="demo", ssh_source_ip=SSH_RANGE)


@pytest.fixture
def tmp_home(tmp_path: Path) -> Path:
    """Provide a temporary llmvm home directory for testing."""
    home = tmp_path / ".llmvm"
    home.mkdir()
    return home


class FakeProvisioner(Provisioner):
    """In-memory provisioner that records every call.

    Mutating calls land in ``calls``; ``exists`` lookups in ``lookups``.

    Args:
        fail_on: Resource keys whose create/update/delete should fail.
        public_ip: Address reported by ``fetch_outputs``.
    """

    name = "fake"

    def __init__(self, fail_on: Optional[Set[str]] = None, public_ip: str = "34.1.2.3") -> None:
        self.live: Dict[str, Resource] = {}
        self.calls: List[tuple] = []
        self.lookups: List[str] = []
        self.fail_on = set(fail_on or ())
        self.public_ip = public_ip
        self.instance_status = ResourceStatus.READY

    def _maybe_fail(self, action: str, resource: Resource) -> None:
        if resource.key in self.fail_on:
            raise ProvisioningError(resource.key, f"{action} failed: boom")

    def exists(self, resource: Resource) -> bool:
        self.lookups.append(resource.key)
        return resource.key in self.live

    def create(self, resource: Resource) -> None:
        self.calls.append(("create", resource.key))
        self._maybe_fail("create", resource)
        self.live[resource.key] = resource

    def update(self, resource: Resource) -> None:
        self.calls.append(("update", resource.key))
        self._maybe_fail("update", resource)
        self.live[resource.key] = resource

    def delete(self, resource: Resource) -> None:
        self.calls.append(("delete", resource.key))
        self._maybe_fail("delete", resource)
        self.live.pop(resource.key, None)

    def status(self, instance: Instance) -> ResourceStatus:
        if instance.key not in self.live:
            return ResourceStatus.DELETED
        return self.instance_status

    def fetch_outputs(self, instance: Instance) -> StackOutputs:
        ip = self.public_ip if instance.key in self.live else ""
        return StackOutputs(instance_name=instance.name, instance_public_ip=ip)


@pytest.fixture
def fake_provisioner() -> FakeProvisioner:
    return FakeProvisioner()


@pytest.fixture
def make_provisioner():
    """Factory for FakeProvisioner with custom failures."""
    return FakeProvisioner
