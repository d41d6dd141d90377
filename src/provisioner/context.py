"""Explicit deployment context.

Every entry point receives a DeploymentContext instead of looking up the
current stack from ambient state.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Protocol

from .config import ConfigurationError

# Storage account names are 3-24 lowercase alphanumerics and embed the stack
# name after a 10 character prefix, so stack names are capped at 14.
VALID_STACK_NAME_PATTERN = r"^[a-z0-9]{1,14}$"
VALID_TENANT_ID_PATTERN = r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"
VALID_LOCATION_PATTERN = r"^[a-z]{2,}[a-z0-9]*$"

DEFAULT_LOCATION = "westeurope"


class Clock(Protocol):
    """Source of the current time."""

    def now(self) -> datetime: ...


class SystemClock:
    """Wall clock in UTC."""

    def now(self) -> datetime:
        return datetime.now(UTC)


@dataclass(frozen=True)
class DeploymentContext:
    """Stack-wide inputs that arrive from outside the core."""

    stack_name: str
    tenant_id: str
    location: str = DEFAULT_LOCATION
    subscription_id: str | None = None
    clock: Clock = field(default_factory=SystemClock, compare=False)

    def __post_init__(self) -> None:
        errors: list[str] = []

        if not re.match(VALID_STACK_NAME_PATTERN, self.stack_name):
            errors.append(
                f"stack name must match pattern {VALID_STACK_NAME_PATTERN}: {self.stack_name!r}"
            )

        if not re.match(VALID_TENANT_ID_PATTERN, self.tenant_id.lower()):
            errors.append(f"tenant id must be a valid GUID: {self.tenant_id!r}")

        if not re.match(VALID_LOCATION_PATTERN, self.location.lower()):
            errors.append(f"location must be a valid Azure region: {self.location!r}")

        if self.subscription_id and not re.match(
            VALID_TENANT_ID_PATTERN, self.subscription_id.lower()
        ):
            errors.append(f"subscription id must be a valid GUID: {self.subscription_id!r}")

        if errors:
            raise ConfigurationError(
                "Deployment context validation failed:\n  - " + "\n  - ".join(errors)
            )

    @classmethod
    def from_env(cls, default_tenant_id: str = "") -> DeploymentContext:
        """Load the context from environment variables.

        Args:
            default_tenant_id: Tenant used when AZURE_TENANT_ID is unset
                (usually the tenant from the stack settings).

        Environment Variables:
            PROVISIONER_STACK: Stack name (required)
            AZURE_TENANT_ID: Directory tenant (default: default_tenant_id)
            AZURE_LOCATION: Default region (default: westeurope)
            AZURE_SUBSCRIPTION_ID: Target subscription (required for Azure runs)
        """
        return cls(
            stack_name=os.environ.get("PROVISIONER_STACK", ""),
            tenant_id=os.environ.get("AZURE_TENANT_ID") or default_tenant_id,
            location=os.environ.get("AZURE_LOCATION", DEFAULT_LOCATION),
            subscription_id=os.environ.get("AZURE_SUBSCRIPTION_ID") or None,
        )
