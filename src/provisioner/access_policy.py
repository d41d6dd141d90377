"""Binding principal identities into vault access policies.

The principal of a managed identity only exists once the owning resource is
realized. bind() stores the identity's DeferredValue in the vault's access
policy and registers it as a vault input, so the graph orders the vault
strictly after the identity-producing node.

An identity that is already known to be empty is rejected by bind() with
MissingIdentityError. A pending identity that later resolves empty is
detected when the value resolves: the vault node fails with
MissingIdentityError.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from .config import ConfigurationError
from .context import DeploymentContext
from .deferred import DeferredValue
from .resources import (
    AccessPolicyEntry,
    KeyPermission,
    ResourceStatus,
    SecretPermission,
    StrInput,
    Vault,
    VaultPermissions,
)

logger = logging.getLogger(__name__)

__all__ = [
    "AccessPolicyBinder",
    "AccessPolicyEntry",
    "MissingIdentityError",
    "VaultPermissions",
]


class MissingIdentityError(ConfigurationError):
    """Raised when a bound principal resolves to an empty identity."""

    pass


class AccessPolicyBinder:
    """Appends access policy entries for deferred principals to vaults."""

    def __init__(self, context: DeploymentContext) -> None:
        self._tenant_id = context.tenant_id

    def bind(
        self,
        vault: Vault,
        principal: StrInput,
        secrets: Iterable[SecretPermission] = (),
        keys: Iterable[KeyPermission] = (),
    ) -> AccessPolicyEntry:
        """Grant a principal permissions on a vault.

        Args:
            vault: Vault node that has not been handed to an engine yet.
            principal: Object id of the principal, usually a deferred output.
            secrets: Secret permissions to grant.
            keys: Key permissions to grant.

        Returns:
            The appended entry. Its object_id fails with MissingIdentityError
            if the principal resolves to an empty value.

        Raises:
            ConfigurationError: If the vault is already queued or realized.
            MissingIdentityError: If the principal is already known to be empty.
        """
        if vault.status is not ResourceStatus.CREATED:
            raise ConfigurationError(
                f"Cannot bind access policy to '{vault.logical_name}' "
                f"in state {vault.status.value}"
            )

        permissions = VaultPermissions(secrets=list(secrets), keys=list(keys))
        if not permissions.secrets and not permissions.keys:
            raise ConfigurationError("Access policy must grant at least one permission")

        vault_name = vault.logical_name

        def _require_identity(object_id: str | None) -> str:
            if not object_id:
                raise MissingIdentityError(
                    f"Principal bound to vault '{vault_name}' resolved to an empty identity"
                )
            return object_id

        checked_principal = DeferredValue.of(principal).map(_require_identity)
        # A literal or already-resolved empty principal is rejected before the vault changes
        if isinstance(checked_principal.error, MissingIdentityError):
            raise checked_principal.error

        entry = AccessPolicyEntry(
            object_id=checked_principal,
            tenant_id=self._tenant_id,
            permissions=permissions,
        )
        vault.args.properties.access_policies.append(entry)
        vault.register_input(checked_principal)

        logger.info(
            "Access policy bound",
            extra={
                "vault": vault_name,
                "secret_permissions": [p.value for p in permissions.secrets],
                "key_permissions": [p.value for p in permissions.keys],
                "principal_sources": sorted(n.logical_name for n in checked_principal.lineage),
            },
        )
        return entry
