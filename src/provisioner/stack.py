"""The contact-legacy stack: a function app with storage, telemetry and a vault.

build_contact_legacy_stack() only declares nodes. Nothing is contacted until
the returned nodes are handed to a ProvisioningEngine.

Realization order follows the data flow:

    resource group
      -> storage account -> primary key -> AzureWebJobsStorage connection string
      -> app insights    -> instrumentation key
      -> plan
         -> function app (+ staging slot) -> principal id -> vault access policy
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime, time
from typing import Any

from .access_policy import AccessPolicyBinder
from .config import ConfigurationError
from .context import DeploymentContext
from .deferred import DeferredValue
from .resources import (
    AppServicePlan,
    AppServicePlanArgs,
    ApplicationType,
    Blob,
    BlobArgs,
    BlobContainer,
    BlobContainerArgs,
    BlobType,
    Component,
    ComponentArgs,
    ManagedServiceIdentity,
    ManagedServiceIdentityType,
    PublicAccess,
    ResourceGroup,
    ResourceGroupArgs,
    ResourceNode,
    SecretPermission,
    SiteConfig,
    SkuDescription,
    StorageAccount,
    StorageAccountArgs,
    StorageKind,
    StorageSku,
    Vault,
    VaultArgs,
    VaultProperties,
    VaultSku,
    WebApp,
    WebAppArgs,
    WebAppSlot,
    WebAppSlotArgs,
)
from .sas import SasPermission, SasProtocol, SignedResource, SignedUrlRequest, build_signed_url
from .settings import app_settings, build_connection_string
from .stack_config import StackSettings

logger = logging.getLogger(__name__)


@dataclass
class Stack:
    """Declared nodes in declaration order plus named exports."""

    name: str
    nodes: list[ResourceNode] = field(default_factory=list)
    exports: dict[str, DeferredValue[Any]] = field(default_factory=dict)

    def add(self, node: ResourceNode) -> Any:
        self.nodes.append(node)
        return node

    def node(self, logical_name: str) -> ResourceNode:
        """Look up a declared node.

        Raises:
            KeyError: If no node has that logical name.
        """
        for node in self.nodes:
            if node.logical_name == logical_name:
                return node
        raise KeyError(logical_name)


def build_contact_legacy_stack(ctx: DeploymentContext, settings: StackSettings) -> Stack:
    """Declare every node of the contact-legacy stack.

    Args:
        ctx: Stack name, tenant and location.
        settings: Literal configuration for the stack.

    Returns:
        The declared stack; exports primaryStorageKey (secret) and, when a
        code blob is published, codeBlobUrl (secret).
    """
    stack_name = ctx.stack_name
    stack = Stack(name=stack_name)

    resource_group: ResourceGroup = stack.add(
        ResourceGroup(
            f"contact-legacy-{stack_name}",
            ResourceGroupArgs(location=settings.location or ctx.location),
        )
    )

    storage_account: StorageAccount = stack.add(
        StorageAccount(
            f"contactleg{stack_name}",
            StorageAccountArgs(
                resource_group_name=resource_group.name,
                sku=StorageSku(name=settings.storage_sku),
                kind=StorageKind.STORAGE_V2,
                location=resource_group.location,
            ),
        )
    )
    primary_storage_key = storage_account.primary_key

    app_insights: Component = stack.add(
        Component(
            "appInsights",
            ComponentArgs(
                resource_group_name=resource_group.name,
                application_type=ApplicationType.WEB,
                kind="web",
                location=resource_group.location,
            ),
        )
    )

    plan: AppServicePlan = stack.add(
        AppServicePlan(
            f"contact-legacy-plan-{stack_name}",
            AppServicePlanArgs(
                resource_group_name=resource_group.name,
                kind="Linux",
                sku=SkuDescription(tier=settings.plan.tier, name=settings.plan.size),
                reserved=True,
                location=resource_group.location,
            ),
        )
    )

    if settings.publish_code_blob:
        stack.exports["codeBlobUrl"] = _publish_code_blob(
            stack, settings, resource_group, storage_account
        )

    site_settings = app_settings(
        {
            "AzureWebJobsStorage": build_connection_string(
                storage_account.name, primary_storage_key
            ),
            "FUNCTIONS_WORKER_RUNTIME": settings.worker_runtime,
            "FUNCTIONS_EXTENSION_VERSION": settings.functions_extension_version,
            "SCM_DO_BUILD_DURING_DEPLOYMENT": str(settings.scm_do_build_during_deployment).upper(),
            "APPINSIGHTS_INSTRUMENTATIONKEY": app_insights.instrumentation_key,
        }
    )

    app_name = f"contact-legacy-function-{stack_name}"
    app: WebApp = stack.add(
        WebApp(
            app_name,
            WebAppArgs(
                name=app_name,
                resource_group_name=resource_group.name,
                kind="FunctionApp",
                server_farm_id=plan.id,
                site_config=SiteConfig(app_settings=site_settings),
                identity=ManagedServiceIdentity(type=ManagedServiceIdentityType.SYSTEM_ASSIGNED),
                location=resource_group.location,
            ),
        )
    )

    stack.add(
        WebAppSlot(
            settings.staging_slot,
            WebAppSlotArgs(
                name=app.name,
                slot=settings.staging_slot,
                resource_group_name=resource_group.name,
                kind="FunctionApp",
                server_farm_id=plan.id,
                site_config=SiteConfig(app_settings=site_settings),
                identity=ManagedServiceIdentity(type=ManagedServiceIdentityType.SYSTEM_ASSIGNED),
                location=resource_group.location,
            ),
        )
    )

    vault: Vault = stack.add(
        Vault(
            "vault",
            VaultArgs(
                name=f"contact-legacy-vault-{stack_name}",
                resource_group_name=resource_group.name,
                location=resource_group.location,
                properties=VaultProperties(
                    tenant_id=ctx.tenant_id,
                    sku=VaultSku(family="A", name=settings.vault_sku),
                    enabled_for_deployment=True,
                    enabled_for_disk_encryption=True,
                    enabled_for_template_deployment=True,
                ),
            ),
        )
    )
    AccessPolicyBinder(ctx).bind(vault, app.principal_id, secrets=[SecretPermission.GET])

    stack.exports["primaryStorageKey"] = primary_storage_key

    logger.info(
        "Stack declared",
        extra={
            "stack": stack_name,
            "nodes": [node.logical_name for node in stack.nodes],
            "exports": sorted(stack.exports),
        },
    )
    return stack


def _publish_code_blob(
    stack: Stack,
    settings: StackSettings,
    resource_group: ResourceGroup,
    storage_account: StorageAccount,
) -> DeferredValue[str]:
    code_blob = settings.code_blob
    if code_blob is None:
        raise ConfigurationError("publish_code_blob requires code_blob settings")

    container: BlobContainer = stack.add(
        BlobContainer(
            code_blob.container_name,
            BlobContainerArgs(
                account_name=storage_account.name,
                resource_group_name=resource_group.name,
                public_access=PublicAccess.NONE,
            ),
        )
    )
    blob: Blob = stack.add(
        Blob(
            code_blob.blob_name,
            BlobArgs(
                account_name=storage_account.name,
                container_name=container.name,
                resource_group_name=resource_group.name,
                type=BlobType.BLOCK,
                source=code_blob.source,
            ),
        )
    )

    request = SignedUrlRequest(
        account_name=storage_account.name,
        container_name=container.name,
        blob_name=blob.name,
        start=datetime.combine(code_blob.sas_start, time.min, tzinfo=UTC),
        expiry=datetime.combine(code_blob.sas_expiry, time.min, tzinfo=UTC),
        resource=SignedResource.CONTAINER,
        permissions=frozenset({SasPermission.READ}),
        protocol=SasProtocol.HTTPS,
        content_type=code_blob.content_type,
        cache_control=code_blob.cache_control,
        content_disposition=code_blob.content_disposition,
        content_encoding=code_blob.content_encoding,
    )
    return build_signed_url(request, lambda _account: storage_account.primary_key)
