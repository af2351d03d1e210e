"""External collaborators: generation services and delivery targets."""

from .client import ServiceClient, ServiceRequest
from .delivery import DeliveryTarget, DirectoryDelivery
from .http_client import HttpServiceClient

__all__ = [
    "ServiceClient",
    "ServiceRequest",
    "DeliveryTarget",
    "DirectoryDelivery",
    "HttpServiceClient",
]
