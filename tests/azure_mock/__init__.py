"""Azure API mocks for integration testing.

In-memory fakes for the two remote services the provisioner talks to:

- MockResourceManager: Azure Resource Manager (clusters, agent pools,
  registries, role assignments), with call recording, failure injection
  and nextLink pagination
- MockGraphDirectory: Microsoft Graph applications and passwords
- MockManagedIdentityCredential: the provisioner's own identity

Usage:
    from azure_mock import MockAzureContext

    with MockAzureContext() as ctx:
        service = ctx.service()
        cluster = service.create_cluster(ClusterSpec(name="aks1"))
        assert ctx.arm.resource(cluster.id) is not None
"""

from .clock import FakeClock
from .context import MockAzureContext, mock_azure_context
from .credential import MockManagedIdentityCredential, create_mock_credential
from .graph import MockApplication, MockGraphDirectory
from .resources import (
    SUBSCRIPTION_ID,
    TENANT_ID,
    MockCall,
    MockResourceManager,
    kubeconfig_text,
    propagation_error,
    quota_error,
)

__all__ = [
    "SUBSCRIPTION_ID",
    "TENANT_ID",
    "FakeClock",
    "MockApplication",
    "MockAzureContext",
    "MockCall",
    "MockGraphDirectory",
    "MockManagedIdentityCredential",
    "MockResourceManager",
    "create_mock_credential",
    "kubeconfig_text",
    "mock_azure_context",
    "propagation_error",
    "quota_error",
]
