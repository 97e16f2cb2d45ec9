from .client import (
    STATUS_OK,
    STATUS_SERVICE_READY,
    STATUS_TRANSACTION_FAILED,
    ManagementClient,
    ProviderUnavailable,
    provision_user,
)

__all__ = [
    "STATUS_OK",
    "STATUS_SERVICE_READY",
    "STATUS_TRANSACTION_FAILED",
    "ManagementClient",
    "ProviderUnavailable",
    "provision_user",
]
