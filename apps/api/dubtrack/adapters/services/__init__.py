"""Clients for the external processing services."""

from .base import ServiceClient, UpstreamServiceError, UpstreamTimeoutError
from .clients import (
    AudioCleanerClient,
    ExternalServices,
    TranslationClient,
    VoiceAssignmentClient,
)

__all__ = [
    "AudioCleanerClient",
    "ExternalServices",
    "ServiceClient",
    "TranslationClient",
    "UpstreamServiceError",
    "UpstreamTimeoutError",
    "VoiceAssignmentClient",
]
