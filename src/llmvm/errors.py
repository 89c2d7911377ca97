"""Exception hierarchy shared by every llmvm layer."""

from __future__ import annotations


class LlmvmError(Exception):
    """Base class for all errors raised by llmvm."""


class ConfigError(LlmvmError):
    """Operator inputs are missing or invalid."""


class StackError(LlmvmError):
    """The rendered resource graph is inconsistent (cycle or dangling ref)."""


class ProvisioningError(LlmvmError):
    """The cloud control plane rejected or failed a resource operation.

    Args:
        key: Resource key (``kind/name``) the operation targeted.
        message: Human-readable reason.
    """

    def __init__(self, key: str, message: str) -> None:
        super().__init__(f"{key}: {message}")
        self.key = key
