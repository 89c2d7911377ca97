"""Tests for the deployment engine.

Covers:
- Dry-run apply records a plan without overwriting applied state
- Apply walks the waves and records outputs
- Re-apply makes no provider calls; changed inputs patch or fail as expected
- A failed patch keeps the last applied fingerprint so a retry patches again
- Failure stops the walk without rollback
- Saved state never contains the SSH range in clear
- destroy removes everything in reverse order
"""

from __future__ import annotations

import stat

from llmvm.config import StackInputs
from llmvm.engine import (
    STATE_KEY_FILE,
    DeployEngine,
    DeploymentStatus,
    ResourceRecord,
    deployment_id_for,
)
from llmvm.resources import AllowRule, Direction, FirewallRule, ResourceStatus

SSH_RANGE = "203.0.113.5/32"
DEP_ID = "demo-llm-vpc-network"
SCRIPT = "#!/bin/bash\ntrue\n"


def _engine(home, provisioner=None) -> DeployEngine:
    return DeployEngine(home=home, provisioner=provisioner, startup_script=SCRIPT)


class TestStateKey:
    """Tests for the fingerprint key."""

    def test_created_private(self, tmp_home):
        _engine(tmp_home)
        path = tmp_home / STATE_KEY_FILE
        assert path.exists()
        assert stat.S_IMODE(path.stat().st_mode) == 0o600

    def test_reused(self, tmp_home):
        _engine(tmp_home)
        first = (tmp_home / STATE_KEY_FILE).read_text()
        _engine(tmp_home)
        assert (tmp_home / STATE_KEY_FILE).read_text() == first


class TestPlanAndDryRun:
    """Tests for planning without a provisioner."""

    def test_deployment_id(self, inputs):
        assert deployment_id_for(inputs) == DEP_ID

    def test_plan_creates_everything(self, tmp_home, inputs):
        diff = _engine(tmp_home).plan(inputs)
        assert len(diff.to_create) == 5
        assert diff.to_create[0] == "network/llm-vpc-network"

    def test_dry_run_records_plan(self, tmp_home, inputs):
        dep = _engine(tmp_home).apply(inputs)
        assert dep.status == DeploymentStatus.PLANNED
        assert dep.provider == "none"
        assert all(r.status == ResourceStatus.PENDING for r in dep.resources.values())
        assert (tmp_home / "deployments" / f"{DEP_ID}.json").exists()

    def test_dry_run_does_not_mark_applied(self, tmp_home, inputs):
        _engine(tmp_home).apply(inputs)
        # Nothing is READY, so a later plan still creates everything.
        assert len(_engine(tmp_home).plan(inputs).to_create) == 5

    def test_dry_run_keeps_applied_state(self, tmp_home, inputs, fake_provisioner):
        _engine(tmp_home, fake_provisioner).apply(inputs)
        moved = StackInputs(project_id="demo", ssh_source_ip="198.51.100.9/32")

        dep = _engine(tmp_home).apply(moved)
        assert dep.status == DeploymentStatus.PLANNED

        saved = _engine(tmp_home).get_deployment(DEP_ID)
        assert saved.status == DeploymentStatus.APPLIED
        assert saved.outputs.instance_public_ip == "34.1.2.3"
        assert all(r.status == ResourceStatus.READY for r in saved.resources.values())

        fake_provisioner.calls.clear()
        _engine(tmp_home, fake_provisioner).apply(moved)
        assert fake_provisioner.calls == [("update", "firewall/llm-vpc-network-allow-ssh")]


class TestApply:
    """Tests for apply against a fake provisioner."""

    def test_creates_in_wave_order(self, tmp_home, inputs, fake_provisioner):
        dep = _engine(tmp_home, fake_provisioner).apply(inputs)

        assert dep.status == DeploymentStatus.APPLIED
        created = [key for action, key in fake_provisioner.calls if action == "create"]
        assert created[0] == "network/llm-vpc-network"
        assert created[-1] == "instance/tinylama-vm"
        assert len(created) == 5
        assert all(r.status == ResourceStatus.READY for r in dep.resources.values())

    def test_outputs(self, tmp_home, inputs, fake_provisioner):
        dep = _engine(tmp_home, fake_provisioner).apply(inputs)
        assert dep.outputs.instance_name == "tinylama-vm"
        assert dep.outputs.instance_public_ip == "34.1.2.3"

    def test_reapply_is_noop(self, tmp_home, inputs, fake_provisioner):
        _engine(tmp_home, fake_provisioner).apply(inputs)
        fake_provisioner.calls.clear()
        fake_provisioner.lookups.clear()

        assert not _engine(tmp_home).plan(inputs).has_changes
        dep = _engine(tmp_home, fake_provisioner).apply(inputs)
        assert dep.status == DeploymentStatus.APPLIED
        assert fake_provisioner.calls == []
        assert fake_provisioner.lookups == []

    def test_adopts_existing_resources(self, tmp_home, inputs, fake_provisioner):
        stack = _engine(tmp_home).render(inputs)
        fake_provisioner.live[stack.network.key] = stack.network

        _engine(tmp_home, fake_provisioner).apply(inputs)
        created = [key for action, key in fake_provisioner.calls if action == "create"]
        assert "network/llm-vpc-network" not in created

    def test_ssh_change_patches_firewall(self, tmp_home, inputs, fake_provisioner):
        _engine(tmp_home, fake_provisioner).apply(inputs)
        fake_provisioner.calls.clear()

        moved = StackInputs(project_id="demo", ssh_source_ip="198.51.100.9/32")
        dep = _engine(tmp_home, fake_provisioner).apply(moved)

        assert dep.status == DeploymentStatus.APPLIED
        assert fake_provisioner.calls == [("update", "firewall/llm-vpc-network-allow-ssh")]
        live = fake_provisioner.live["firewall/llm-vpc-network-allow-ssh"]
        assert live.source_ranges == ["198.51.100.9/32"]

    def test_failed_patch_retried(self, tmp_home, inputs, fake_provisioner):
        ssh_key = "firewall/llm-vpc-network-allow-ssh"
        applied = _engine(tmp_home, fake_provisioner).apply(inputs)
        old_fingerprint = applied.resources[ssh_key].fingerprint

        fake_provisioner.fail_on = {ssh_key}
        moved = StackInputs(project_id="demo", ssh_source_ip="198.51.100.9/32")
        dep = _engine(tmp_home, fake_provisioner).apply(moved)
        assert dep.status == DeploymentStatus.PARTIAL

        saved = _engine(tmp_home).get_deployment(DEP_ID).resources[ssh_key]
        assert saved.status == ResourceStatus.FAILED
        assert saved.fingerprint == old_fingerprint
        assert _engine(tmp_home).plan(moved).to_update == {ssh_key: ["(sensitive)"]}

        fake_provisioner.fail_on.clear()
        fake_provisioner.calls.clear()
        dep = _engine(tmp_home, fake_provisioner).apply(moved)
        assert dep.status == DeploymentStatus.APPLIED
        assert fake_provisioner.calls == [("update", ssh_key)]
        assert fake_provisioner.live[ssh_key].source_ranges == ["198.51.100.9/32"]

    def test_adopted_firewall_rule_is_patched(self, tmp_home, inputs, fake_provisioner):
        stack = _engine(tmp_home).render(inputs)
        rule = next(r for r in stack.firewall_rules if r.direction == Direction.INGRESS)
        fake_provisioner.live[rule.key] = rule.model_copy(update={"source_ranges": ["0.0.0.0/0"]})

        _engine(tmp_home, fake_provisioner).apply(inputs)
        assert ("update", rule.key) in fake_provisioner.calls
        assert ("create", rule.key) not in fake_provisioner.calls
        assert fake_provisioner.live[rule.key].source_ranges == [SSH_RANGE]

    def test_boot_script_edit_leaves_instance_alone(self, tmp_home, inputs, fake_provisioner):
        _engine(tmp_home, fake_provisioner).apply(inputs)
        fake_provisioner.calls.clear()

        engine = DeployEngine(
            home=tmp_home, provisioner=fake_provisioner, startup_script="#!/bin/bash\necho v2\n",
        )
        dep = engine.apply(inputs)
        assert dep.status == DeploymentStatus.APPLIED
        assert fake_provisioner.calls == []

    def test_failure_stops_walk(self, tmp_home, inputs, make_provisioner):
        prov = make_provisioner(fail_on={"subnet/llm-vpc-network-subnet"})
        dep = _engine(tmp_home, prov).apply(inputs)

        assert dep.status == DeploymentStatus.PARTIAL
        subnet = dep.resources["subnet/llm-vpc-network-subnet"]
        assert subnet.status == ResourceStatus.FAILED
        assert "boom" in subnet.error
        assert dep.resources["network/llm-vpc-network"].status == ResourceStatus.READY
        assert dep.resources["instance/tinylama-vm"].status == ResourceStatus.PENDING
        assert ("create", "instance/tinylama-vm") not in prov.calls
        # No rollback.
        assert "network/llm-vpc-network" in prov.live
        assert dep.outputs is None

    def test_first_resource_failure(self, tmp_home, inputs, make_provisioner):
        prov = make_provisioner(fail_on={"network/llm-vpc-network"})
        dep = _engine(tmp_home, prov).apply(inputs)
        assert dep.status == DeploymentStatus.FAILED

    def test_retry_after_failure(self, tmp_home, inputs, make_provisioner):
        prov = make_provisioner(fail_on={"instance/tinylama-vm"})
        _engine(tmp_home, prov).apply(inputs)
        prov.fail_on.clear()
        prov.calls.clear()

        dep = _engine(tmp_home, prov).apply(inputs)
        assert dep.status == DeploymentStatus.APPLIED
        assert prov.calls == [("create", "instance/tinylama-vm")]

    def test_state_has_no_ssh_range(self, tmp_home, inputs, fake_provisioner):
        _engine(tmp_home, fake_provisioner).apply(inputs)
        text = (tmp_home / "deployments" / f"{DEP_ID}.json").read_text()
        assert SSH_RANGE not in text
        assert "(sensitive)" in text

    def test_subnet_change_updates_subnet(self, tmp_home, inputs, fake_provisioner):
        _engine(tmp_home, fake_provisioner).apply(inputs)
        fake_provisioner.calls.clear()

        changed = StackInputs(project_id="demo", ssh_source_ip=SSH_RANGE, subnet_cidr="10.40.0.0/16")
        _engine(tmp_home, fake_provisioner).apply(changed)
        assert fake_provisioner.calls == [("update", "subnet/llm-vpc-network-subnet")]

    def test_deletes_resources_dropped_from_stack(self, tmp_home, inputs, fake_provisioner):
        engine = _engine(tmp_home, fake_provisioner)
        engine.apply(inputs)
        stale = FirewallRule(
            name="llm-vpc-network-allow-http",
            network="llm-vpc-network",
            direction=Direction.INGRESS,
            allowed=[AllowRule(protocol="tcp", ports=["80"])],
            source_ranges=["0.0.0.0/0"],
        )
        fake_provisioner.live[stale.key] = stale
        dep = engine.get_deployment(DEP_ID)
        dep.resources[stale.key] = ResourceRecord(
            key=stale.key, kind=stale.kind, name=stale.name,
            status=ResourceStatus.READY, fingerprint="x", spec=stale.redacted(),
        )
        engine._save_deployment(dep)
        fake_provisioner.calls.clear()

        dep = _engine(tmp_home, fake_provisioner).apply(inputs)
        assert fake_provisioner.calls == [("delete", stale.key)]
        assert stale.key not in dep.resources
        assert stale.key not in fake_provisioner.live


class TestOutputsAndStatus:
    """Tests for outputs and refresh_status."""

    def test_unknown_deployment(self, tmp_home):
        assert _engine(tmp_home).outputs("nope") is None
        assert _engine(tmp_home).get_deployment("nope") is None

    def test_saved_outputs_without_provisioner(self, tmp_home, inputs, fake_provisioner):
        _engine(tmp_home, fake_provisioner).apply(inputs)
        out = _engine(tmp_home).outputs(DEP_ID)
        assert out.instance_public_ip == "34.1.2.3"

    def test_refreshed_outputs(self, tmp_home, inputs, fake_provisioner):
        _engine(tmp_home, fake_provisioner).apply(inputs)
        fake_provisioner.public_ip = "34.9.9.9"
        out = _engine(tmp_home, fake_provisioner).outputs(DEP_ID)
        assert out.instance_public_ip == "34.9.9.9"
        assert _engine(tmp_home).get_deployment(DEP_ID).outputs.instance_public_ip == "34.9.9.9"

    def test_refresh_status(self, tmp_home, inputs, fake_provisioner):
        _engine(tmp_home, fake_provisioner).apply(inputs)
        fake_provisioner.instance_status = ResourceStatus.STOPPED
        dep = _engine(tmp_home, fake_provisioner).refresh_status(DEP_ID)
        assert dep.resources["instance/tinylama-vm"].status == ResourceStatus.STOPPED

    def test_refresh_missing_instance_clears_fingerprint(self, tmp_home, inputs, fake_provisioner):
        _engine(tmp_home, fake_provisioner).apply(inputs)
        del fake_provisioner.live["instance/tinylama-vm"]

        dep = _engine(tmp_home, fake_provisioner).refresh_status(DEP_ID)
        record = dep.resources["instance/tinylama-vm"]
        assert record.status == ResourceStatus.DELETED
        assert not record.applied
        assert "instance/tinylama-vm" in _engine(tmp_home).plan(inputs).to_create

    def test_list_deployments(self, tmp_home, inputs, fake_provisioner):
        _engine(tmp_home, fake_provisioner).apply(inputs)
        (tmp_home / "deployments" / "broken.json").write_text("{not json")
        deps = _engine(tmp_home).list_deployments()
        assert [d.deployment_id for d in deps] == [DEP_ID]


class TestDestroy:
    """Tests for destroy."""

    def test_reverse_order(self, tmp_home, inputs, fake_provisioner):
        _engine(tmp_home, fake_provisioner).apply(inputs)
        fake_provisioner.calls.clear()

        assert _engine(tmp_home, fake_provisioner).destroy(DEP_ID) is True
        deleted = [key for action, key in fake_provisioner.calls if action == "delete"]
        assert deleted[0] == "instance/tinylama-vm"
        assert deleted[-1] == "network/llm-vpc-network"
        assert len(deleted) == 5
        assert fake_provisioner.live == {}
        assert not (tmp_home / "deployments" / f"{DEP_ID}.json").exists()

    def test_continues_past_failure(self, tmp_home, inputs, fake_provisioner):
        _engine(tmp_home, fake_provisioner).apply(inputs)
        fake_provisioner.fail_on = {"subnet/llm-vpc-network-subnet"}

        assert _engine(tmp_home, fake_provisioner).destroy(DEP_ID) is False
        deleted = [key for action, key in fake_provisioner.calls if action == "delete"]
        assert "network/llm-vpc-network" in deleted

        dep = _engine(tmp_home).get_deployment(DEP_ID)
        assert dep.resources["subnet/llm-vpc-network-subnet"].status == ResourceStatus.FAILED
        assert dep.resources["instance/tinylama-vm"].status == ResourceStatus.DELETED

    def test_unknown(self, tmp_home, fake_provisioner):
        assert _engine(tmp_home, fake_provisioner).destroy("nope") is False

    def test_failed_destroy_then_apply_recreates(self, tmp_home, inputs, fake_provisioner):
        _engine(tmp_home, fake_provisioner).apply(inputs)
        fake_provisioner.fail_on = {"network/llm-vpc-network"}
        _engine(tmp_home, fake_provisioner).destroy(DEP_ID)

        dep = _engine(tmp_home).get_deployment(DEP_ID)
        assert dep.resources["instance/tinylama-vm"].fingerprint == ""
        assert dep.resources["network/llm-vpc-network"].fingerprint != ""

        fake_provisioner.fail_on.clear()
        fake_provisioner.calls.clear()
        _engine(tmp_home, fake_provisioner).apply(inputs)
        created = [key for action, key in fake_provisioner.calls if action == "create"]
        assert "instance/tinylama-vm" in created
        assert "network/llm-vpc-network" not in created
