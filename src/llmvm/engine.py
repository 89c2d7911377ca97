"""
Deployment Engine — converge a rendered stack and remember the result.

Takes StackInputs, renders the stack, and walks it wave by wave through a
Provisioner. The engine doesn't care which cloud the provisioner talks
to; it only decides what to create, patch or leave alone, and persists
what happened so later runs can plan against it.

Apply flow:
  1. Render the stack and load the previous deployment (if any)
  2. Diff desired against previous
  3. Delete resources that dropped out of the stack
  4. Walk the waves: create missing resources, patch changed ones
  5. Stop at the first failure (no rollback), persist state
  6. Read outputs once the instance is up

State lives in ``<home>/deployments/<deployment_id>.json``. Specs are
stored redacted; change detection uses keyed fingerprints so the SSH
range never reaches disk in clear.
"""

from __future__ import annotations

import json
import logging
import secrets
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from . import LLMVM_HOME
from .config import StackInputs
from .errors import ProvisioningError
from .providers.base import Provisioner
from .resources import (
    FirewallRule,
    Instance,
    Resource,
    ResourceStatus,
    StackOutputs,
    resource_from_spec,
)
from .stack import ResourceSnapshot, Stack, StackDiff, diff_stacks, render_stack, resolve_waves

logger = logging.getLogger(__name__)

STATE_KEY_FILE = "state.key"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def deployment_id_for(inputs: StackInputs) -> str:
    """Deterministic deployment identifier for a set of inputs."""
    return f"{inputs.project_id}-{inputs.network_name}"


# ---------------------------------------------------------------------------
# Deployment state
# ---------------------------------------------------------------------------

class DeploymentStatus(str, Enum):
    """Overall outcome of the last apply."""

    PLANNED = "planned"
    APPLIED = "applied"
    PARTIAL = "partial"
    FAILED = "failed"


class ResourceRecord(BaseModel):
    """Saved state of one resource.

    ``fingerprint`` and ``spec`` describe what was last applied to the
    live resource. Both stay at their previous values when an operation
    fails, and the fingerprint is empty until the resource is first
    applied (or after it is deleted).
    """

    key: str
    kind: str
    name: str
    status: ResourceStatus = ResourceStatus.PENDING
    fingerprint: str = ""
    spec: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None
    updated_at: Optional[str] = None

    @property
    def applied(self) -> bool:
        return bool(self.fingerprint) and self.status != ResourceStatus.DELETED


class Deployment(BaseModel):
    """Full saved state of one stack."""

    deployment_id: str
    project_id: str
    region: str
    zone: str
    network_name: str
    provider: str = "none"
    status: DeploymentStatus = DeploymentStatus.PLANNED
    resources: Dict[str, ResourceRecord] = Field(default_factory=dict)
    outputs: Optional[StackOutputs] = None
    created_at: str = Field(default_factory=_now)
    updated_at: str = Field(default_factory=_now)

    def snapshots(self) -> Dict[str, ResourceSnapshot]:
        """Snapshots of what was last applied, keyed by resource key."""
        return {
            key: ResourceSnapshot(
                kind=rec.kind, name=rec.name, fingerprint=rec.fingerprint, spec=rec.spec,
            )
            for key, rec in self.resources.items()
            if rec.applied
        }

    def descriptors(self) -> Dict[str, Resource]:
        """Rebuild descriptors from the saved specs (identity only)."""
        return {
            key: resource_from_spec(rec.kind, rec.spec)
            for key, rec in self.resources.items()
        }


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class DeployEngine:
    """Orchestrates apply/destroy for one provisioner.

    Args:
        home: llmvm home directory (default ``$LLMVM_HOME`` or ~/.llmvm).
        provisioner: The backend to converge against. Without one the
            engine runs in dry-run mode and only records the plan.
        startup_script: Boot payload override passed to ``render_stack``.
    """

    def __init__(
        self,
        home: Optional[Path] = None,
        provisioner: Optional[Provisioner] = None,
        startup_script: Optional[str] = None,
    ) -> None:
        self._home = Path(home or LLMVM_HOME).expanduser()
        self._provisioner = provisioner
        self._startup_script = startup_script
        self._deployments_dir = self._home / "deployments"
        self._deployments_dir.mkdir(parents=True, exist_ok=True)
        self._key = self._load_state_key()

    def _load_state_key(self) -> bytes:
        """Load (or create) the key used for state fingerprints."""
        path = self._home / STATE_KEY_FILE
        if path.exists():
            return bytes.fromhex(path.read_text(encoding="utf-8").strip())
        key = secrets.token_bytes(32)
        path.write_text(key.hex(), encoding="utf-8")
        path.chmod(0o600)
        return key

    def render(self, inputs: StackInputs) -> Stack:
        return render_stack(inputs, startup_script=self._startup_script)

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    def plan(self, inputs: StackInputs) -> StackDiff:
        """Diff the desired stack against the saved deployment.

        Args:
            inputs: Validated operator inputs.

        Returns:
            StackDiff describing what apply would do.
        """
        stack = self.render(inputs)
        previous = self.get_deployment(deployment_id_for(inputs))
        return diff_stacks(
            previous.snapshots() if previous else None, stack, key=self._key,
        )

    # ------------------------------------------------------------------
    # Apply
    # ------------------------------------------------------------------

    def apply(self, inputs: StackInputs) -> Deployment:
        """Converge the live project to the stack rendered from inputs.

        Args:
            inputs: Validated operator inputs.

        Returns:
            Deployment with the state of every resource. Failures are
            recorded on the deployment rather than raised.
        """
        stack = self.render(inputs)
        deployment_id = deployment_id_for(inputs)
        previous = self.get_deployment(deployment_id)
        snapshots = previous.snapshots() if previous else {}
        diff = diff_stacks(snapshots, stack, key=self._key)

        deployment = Deployment(
            deployment_id=deployment_id,
            project_id=inputs.project_id,
            region=inputs.region,
            zone=inputs.zone,
            network_name=inputs.network_name,
            provider=self._provisioner.name if self._provisioner else "none",
        )
        if previous:
            deployment.created_at = previous.created_at
            deployment.outputs = previous.outputs

        for key in stack.creation_order():
            old = previous.resources.get(key) if previous else None
            if old is not None and old.applied:
                deployment.resources[key] = old.model_copy(update={"error": None})
            else:
                res = stack.resources[key]
                deployment.resources[key] = ResourceRecord(
                    key=key, kind=res.kind, name=res.name, spec=res.redacted(),
                )

        logger.info(
            "Applying %s: %d to create, %d to update, %d to delete",
            deployment_id, len(diff.to_create), len(diff.to_update), len(diff.to_delete),
        )

        if self._provisioner is None:
            # Dry-run mode: no provisioner, just record the plan
            deployment.status = DeploymentStatus.PLANNED
            if previous is None or previous.status == DeploymentStatus.PLANNED:
                self._save_deployment(deployment)
            else:
                logger.info("Dry run: keeping saved state of %s", deployment_id)
            return deployment

        failed = self._delete_stale(previous, diff, deployment) if previous else False

        for wave_idx, wave in enumerate(stack.waves()):
            if failed:
                break
            logger.info("Wave %d: %s", wave_idx + 1, wave)
            for key in wave:
                record = deployment.resources[key]
                try:
                    self._converge(stack.resources[key], record, diff, adopted=key not in snapshots)
                except ProvisioningError as exc:
                    record.status = ResourceStatus.FAILED
                    record.error = str(exc)
                    record.updated_at = _now()
                    logger.error("Failed to apply %s: %s", key, exc)
                    failed = True
                    break

        if not failed:
            deployment.outputs = self._read_outputs(stack.instance)
            deployment.status = DeploymentStatus.APPLIED
        elif any(r.status == ResourceStatus.READY for r in deployment.resources.values()):
            deployment.status = DeploymentStatus.PARTIAL
        else:
            deployment.status = DeploymentStatus.FAILED

        deployment.updated_at = _now()
        self._save_deployment(deployment)
        return deployment

    def _converge(
        self,
        res: Resource,
        record: ResourceRecord,
        diff: StackDiff,
        adopted: bool,
    ) -> None:
        """Create or patch one resource so it matches its descriptor.

        Resources whose saved fingerprint matches are left alone without
        a lookup. A firewall rule found live but never applied from this
        state is patched, since its ranges are unknown.
        """
        assert self._provisioner is not None  # guarded by caller
        if res.key in diff.unchanged:
            logger.info("%s up to date", res.key)
        elif not self._provisioner.exists(res):
            record.status = ResourceStatus.CREATING
            self._provisioner.create(res)
        elif res.key in diff.to_update or (adopted and isinstance(res, FirewallRule)):
            self._provisioner.update(res)
        else:
            logger.info("Adopted existing %s", res.key)

        snap = ResourceSnapshot.of(res, self._key)
        record.fingerprint = snap.fingerprint
        record.spec = snap.spec
        record.status = ResourceStatus.READY
        record.updated_at = _now()

    def _delete_stale(self, previous: Deployment, diff: StackDiff, deployment: Deployment) -> bool:
        """Delete resources that are no longer part of the stack.

        A resource that fails to delete stays on the deployment so a later
        apply or destroy retries it.

        Returns:
            True if any deletion failed.
        """
        assert self._provisioner is not None  # guarded by caller
        descriptors = previous.descriptors()
        for key in diff.to_delete:
            try:
                self._provisioner.delete(descriptors[key])
            except ProvisioningError as exc:
                logger.error("Failed to delete stale %s: %s", key, exc)
                deployment.resources[key] = previous.resources[key].model_copy(
                    update={"status": ResourceStatus.FAILED, "error": str(exc), "updated_at": _now()},
                )
                return True
        return False

    def _read_outputs(self, instance: Instance) -> StackOutputs:
        assert self._provisioner is not None  # guarded by caller
        try:
            return self._provisioner.fetch_outputs(instance)
        except ProvisioningError as exc:
            logger.warning("Could not read outputs: %s", exc)
            return StackOutputs(instance_name=instance.name)

    # ------------------------------------------------------------------
    # Status / management
    # ------------------------------------------------------------------

    def list_deployments(self) -> List[Deployment]:
        """List all saved deployments.

        Returns:
            List of Deployment objects.
        """
        deployments = []
        for f in sorted(self._deployments_dir.glob("*.json")):
            try:
                data = json.loads(f.read_text(encoding="utf-8"))
                deployments.append(Deployment(**data))
            except Exception as exc:
                logger.warning("Skipping %s: %s", f, exc)
        return deployments

    def get_deployment(self, deployment_id: str) -> Optional[Deployment]:
        """Load a specific deployment by ID.

        Args:
            deployment_id: The deployment identifier.

        Returns:
            Deployment or None.
        """
        path = self._deployments_dir / f"{deployment_id}.json"
        if not path.exists():
            return None
        data = json.loads(path.read_text(encoding="utf-8"))
        return Deployment(**data)

    def outputs(self, deployment_id: str, refresh: bool = True) -> Optional[StackOutputs]:
        """Return the outputs of a deployment, re-reading them if possible.

        Args:
            deployment_id: The deployment identifier.
            refresh: Query the provisioner for the live address.

        Returns:
            StackOutputs or None if the deployment is unknown.
        """
        deployment = self.get_deployment(deployment_id)
        if not deployment:
            return None
        if not (refresh and self._provisioner):
            return deployment.outputs

        instance = self._find_instance(deployment)
        if instance is None:
            return deployment.outputs
        deployment.outputs = self._read_outputs(instance)
        deployment.updated_at = _now()
        self._save_deployment(deployment)
        return deployment.outputs

    def refresh_status(self, deployment_id: str) -> Optional[Deployment]:
        """Update the saved instance status from the live project.

        Args:
            deployment_id: The deployment identifier.

        Returns:
            The refreshed Deployment, or None if unknown.
        """
        deployment = self.get_deployment(deployment_id)
        if not deployment or not self._provisioner:
            return deployment
        instance = self._find_instance(deployment)
        if instance is None:
            return deployment
        record = deployment.resources[instance.key]
        if not record.applied:
            return deployment
        record.status = self._provisioner.status(instance)
        if record.status == ResourceStatus.DELETED:
            record.fingerprint = ""
        record.updated_at = _now()
        deployment.updated_at = record.updated_at
        self._save_deployment(deployment)
        return deployment

    def destroy(self, deployment_id: str) -> bool:
        """Delete every resource of a deployment in reverse order.

        Keeps going past failures so as much as possible is removed. The
        state file is removed only when everything is gone.

        Args:
            deployment_id: The deployment to destroy.

        Returns:
            True if all resources were deleted.
        """
        deployment = self.get_deployment(deployment_id)
        if not deployment:
            return False

        descriptors = deployment.descriptors()
        order = [key for wave in resolve_waves(descriptors) for key in wave]

        all_ok = True
        if self._provisioner:
            for key in reversed(order):
                record = deployment.resources[key]
                try:
                    self._provisioner.delete(descriptors[key])
                    record.status = ResourceStatus.DELETED
                    record.fingerprint = ""
                    record.error = None
                except ProvisioningError as exc:
                    logger.error("Failed to destroy %s: %s", key, exc)
                    record.status = ResourceStatus.FAILED
                    record.error = str(exc)
                    all_ok = False
                record.updated_at = _now()

        path = self._deployments_dir / f"{deployment_id}.json"
        if all_ok:
            if path.exists():
                path.unlink()
            logger.info("Destroyed %s", deployment_id)
        else:
            deployment.updated_at = _now()
            self._save_deployment(deployment)
        return all_ok

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    @staticmethod
    def _find_instance(deployment: Deployment) -> Optional[Instance]:
        for res in deployment.descriptors().values():
            if isinstance(res, Instance):
                return res
        return None

    def _save_deployment(self, deployment: Deployment) -> Path:
        """Save deployment state to disk.

        Args:
            deployment: The deployment to persist.

        Returns:
            Path to the saved JSON file.
        """
        path = self._deployments_dir / f"{deployment.deployment_id}.json"
        path.write_text(
            json.dumps(deployment.model_dump(mode="json"), indent=2),
            encoding="utf-8",
        )
        return path
