"""Azure Resource Manager provider.

Realizes nodes through the ARM generic resource API, so every kind is a
single idempotent PUT against its resource id:

    resources.begin_create_or_update_by_id(resource_id, api_version, GenericResource)

Resource groups use resource_groups.create_or_update; storage keys come from
azure-mgmt-storage; blob content is uploaded through the data plane.

SECURITY:
- Storage keys are returned wrapped in SecretStr and never logged
- Secret inputs (connection strings in app settings) are revealed only when
  the request body is built
"""

from __future__ import annotations

import io
import logging
import zipfile
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from azure.core.exceptions import (
    AzureError,
    HttpResponseError,
    ServiceRequestError,
    ServiceResponseError,
)
from azure.identity import DefaultAzureCredential
from azure.mgmt.resource import ResourceManagementClient
from azure.mgmt.resource.resources.models import GenericResource, Identity, Sku
from azure.mgmt.storage import StorageManagementClient
from azure.storage.blob import BlobServiceClient, ContentSettings
from pydantic import SecretStr

from .deferred import reveal
from .provider import ProviderError, ProvisioningFailure, TransientProviderError
from .resources import ResourceKind

logger = logging.getLogger(__name__)

# ARM API versions per resource type
API_VERSIONS: dict[ResourceKind, str] = {
    ResourceKind.STORAGE_ACCOUNT: "2023-01-01",
    ResourceKind.BLOB_CONTAINER: "2023-01-01",
    ResourceKind.COMPONENT: "2020-02-02",
    ResourceKind.APP_SERVICE_PLAN: "2022-09-01",
    ResourceKind.WEB_APP: "2022-09-01",
    ResourceKind.WEB_APP_SLOT: "2022-09-01",
    ResourceKind.VAULT: "2023-07-01",
}

# HTTP status codes worth retrying
TRANSIENT_STATUS_CODES: frozenset[int] = frozenset({408, 429})


def get_credential(client_id: str | None = None) -> DefaultAzureCredential:
    """Get the credential used for ARM and data-plane calls.

    Args:
        client_id: Optional client ID of a user-assigned managed identity.
    """
    if client_id:
        logger.info(
            "Using user-assigned managed identity",
            extra={"client_id": client_id[:8] + "..." if len(client_id) > 8 else client_id},
        )
        return DefaultAzureCredential(managed_identity_client_id=client_id)

    logger.info("Using default Azure credential chain")
    return DefaultAzureCredential()


def classify_error(error: AzureError, resource: str) -> ProviderError:
    """Map an Azure SDK error onto the provisioning error taxonomy.

    Throttling, request timeouts, server errors and connection failures are
    transient; everything else is fatal to the node.
    """
    if isinstance(error, (ServiceRequestError, ServiceResponseError)):
        return TransientProviderError(f"Connection error for '{resource}': {error}")

    if isinstance(error, HttpResponseError):
        status = error.status_code
        message = f"Azure returned {status} for '{resource}': {error.message}"
        if status is not None and (status in TRANSIENT_STATUS_CODES or status >= 500):
            return TransientProviderError(message, status_code=status)
        return ProvisioningFailure(message, status_code=status)

    return ProvisioningFailure(f"Azure error for '{resource}': {error}")


class AzureResourceProvider:
    """Provider backed by the Azure management SDKs."""

    def __init__(
        self,
        credential: Any,
        subscription_id: str,
        location: str,
        resource_client: ResourceManagementClient | None = None,
        storage_client: StorageManagementClient | None = None,
    ) -> None:
        self._credential = credential
        self._subscription_id = subscription_id
        self._location = location
        self._resource_client = resource_client or ResourceManagementClient(
            credential, subscription_id
        )
        self._storage_client = storage_client or StorageManagementClient(
            credential, subscription_id
        )

    def create(self, kind: ResourceKind, inputs: Mapping[str, Any]) -> Mapping[str, Any]:
        """Create or update one resource and return its outputs.

        Raises:
            TransientProviderError: For throttling, timeouts and server errors.
            ProvisioningFailure: For any other Azure error.
        """
        name = str(inputs["name"])
        try:
            match kind:
                case ResourceKind.RESOURCE_GROUP:
                    return self._create_resource_group(name, inputs)
                case ResourceKind.BLOB:
                    return self._upload_blob(name, inputs)
                case _:
                    return self._create_generic(kind, name, inputs)
        except AzureError as e:
            raise classify_error(e, name) from e

    # ------------------------------------------------------------------
    # Resource ids
    # ------------------------------------------------------------------

    def resource_id(self, kind: ResourceKind, name: str, inputs: Mapping[str, Any]) -> str:
        """Build the ARM resource id for a node's resolved inputs."""
        subscription = f"/subscriptions/{self._subscription_id}"
        group = f"{subscription}/resourceGroups/{inputs.get('resource_group_name')}"
        match kind:
            case ResourceKind.RESOURCE_GROUP:
                return f"{subscription}/resourceGroups/{name}"
            case ResourceKind.BLOB_CONTAINER:
                return (
                    f"{group}/providers/Microsoft.Storage/storageAccounts/"
                    f"{inputs['account_name']}/blobServices/default/containers/{name}"
                )
            case ResourceKind.WEB_APP_SLOT:
                return f"{group}/providers/Microsoft.Web/sites/{name}/slots/{inputs['slot']}"
            case _:
                return f"{group}/providers/{kind.value}/{name}"

    # ------------------------------------------------------------------
    # Kinds
    # ------------------------------------------------------------------

    def _create_resource_group(self, name: str, inputs: Mapping[str, Any]) -> dict[str, Any]:
        location = inputs.get("location") or self._location
        group = self._resource_client.resource_groups.create_or_update(
            name, {"location": location}
        )
        logger.info("Resource group ready", extra={"resource_group": group.name})
        return {"id": group.id, "name": group.name, "location": group.location}

    def _create_generic(
        self, kind: ResourceKind, name: str, inputs: Mapping[str, Any]
    ) -> dict[str, Any]:
        resource_id = self.resource_id(kind, name, inputs)
        body = self._build_body(kind, inputs)

        logger.info(
            "Creating resource",
            extra={"kind": kind.value, "resource_id": resource_id},
        )
        poller = self._resource_client.resources.begin_create_or_update_by_id(
            resource_id, API_VERSIONS[kind], body
        )
        result = poller.result()
        properties = result.properties or {}

        outputs: dict[str, Any] = {"id": result.id, "name": result.name}
        match kind:
            case ResourceKind.STORAGE_ACCOUNT:
                endpoints = properties.get("primaryEndpoints") or {}
                outputs["primary_blob_endpoint"] = endpoints.get("blob")
                outputs["primary_key"] = self._primary_key(
                    str(inputs["resource_group_name"]), name
                )
            case ResourceKind.COMPONENT:
                outputs["instrumentation_key"] = properties.get("InstrumentationKey")
            case ResourceKind.WEB_APP | ResourceKind.WEB_APP_SLOT:
                outputs["default_host_name"] = properties.get("defaultHostName")
                outputs["principal_id"] = result.identity.principal_id if result.identity else None
            case ResourceKind.VAULT:
                outputs["vault_uri"] = properties.get("vaultUri")
        return outputs

    def _build_body(self, kind: ResourceKind, inputs: Mapping[str, Any]) -> GenericResource:
        location = inputs.get("location") or self._location
        match kind:
            case ResourceKind.STORAGE_ACCOUNT:
                return GenericResource(
                    location=location,
                    kind=inputs["kind"],
                    sku=Sku(name=inputs["sku"]["name"]),
                    properties={},
                )
            case ResourceKind.BLOB_CONTAINER:
                return GenericResource(properties={"publicAccess": inputs["public_access"]})
            case ResourceKind.COMPONENT:
                return GenericResource(
                    location=location,
                    kind=inputs["kind"],
                    properties={"Application_Type": inputs["application_type"]},
                )
            case ResourceKind.APP_SERVICE_PLAN:
                return GenericResource(
                    location=location,
                    kind=inputs["kind"],
                    sku=Sku(name=inputs["sku"]["name"], tier=inputs["sku"]["tier"]),
                    properties={"reserved": inputs["reserved"]},
                )
            case ResourceKind.WEB_APP | ResourceKind.WEB_APP_SLOT:
                identity = inputs.get("identity")
                app_settings = [
                    {"name": setting["name"], "value": reveal(setting["value"])}
                    for setting in inputs["site_config"]["app_settings"]
                ]
                return GenericResource(
                    location=location,
                    kind=inputs["kind"],
                    identity=Identity(type=identity["type"]) if identity else None,
                    properties={
                        "serverFarmId": inputs["server_farm_id"],
                        "siteConfig": {"appSettings": app_settings},
                    },
                )
            case ResourceKind.VAULT:
                props = inputs["properties"]
                return GenericResource(
                    location=location,
                    properties={
                        "tenantId": props["tenant_id"],
                        "sku": props["sku"],
                        "accessPolicies": [
                            {
                                "tenantId": policy["tenant_id"],
                                "objectId": reveal(policy["object_id"]),
                                "permissions": policy["permissions"],
                            }
                            for policy in props["access_policies"]
                        ],
                        "enabledForDeployment": props["enabled_for_deployment"],
                        "enabledForDiskEncryption": props["enabled_for_disk_encryption"],
                        "enabledForTemplateDeployment": props["enabled_for_template_deployment"],
                    },
                )
            case _:
                raise ProvisioningFailure(f"Unsupported resource kind: {kind.value}")

    def _primary_key(self, resource_group: str, account_name: str) -> SecretStr:
        keys = self._storage_client.storage_accounts.list_keys(resource_group, account_name)
        if not keys.keys:
            raise ProvisioningFailure(f"Storage account '{account_name}' returned no keys")
        return SecretStr(keys.keys[0].value)

    def _upload_blob(self, name: str, inputs: Mapping[str, Any]) -> dict[str, Any]:
        account = inputs["account_name"]
        container = inputs["container_name"]
        source = inputs.get("source")
        if source is None:
            raise ProvisioningFailure(f"Blob '{name}' has no source")

        with BlobServiceClient(
            account_url=f"https://{account}.blob.core.windows.net",
            credential=self._credential,
        ) as service:
            blob_client = service.get_blob_client(container=container, blob=name)
            content_settings = ContentSettings(content_type=inputs.get("content_type"))
            blob_client.upload_blob(
                read_source(Path(source)),
                blob_type=f"{inputs['type']}Blob",
                overwrite=True,
                content_settings=content_settings,
            )
            url = blob_client.url
        logger.info(
            "Blob uploaded",
            extra={"account": account, "container": container, "blob": name},
        )
        container_id = self.resource_id(ResourceKind.BLOB_CONTAINER, container, inputs)
        return {
            "id": f"{container_id}/blobs/{name}",
            "name": name,
            "url": url,
        }


def read_source(source: Path) -> bytes:
    """Read blob content; directories are packaged as a zip archive.

    Raises:
        ProvisioningFailure: If the source does not exist.
    """
    if source.is_file():
        return source.read_bytes()
    if not source.is_dir():
        raise ProvisioningFailure(f"Blob source not found: {source}")

    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as archive:
        for path in sorted(source.rglob("*")):
            if path.is_file():
                archive.write(path, path.relative_to(source).as_posix())
    return buffer.getvalue()
