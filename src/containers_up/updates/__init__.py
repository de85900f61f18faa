"""Image update detection against container registries."""

from containers_up.updates.registry import (
    ImageReference,
    RegistryClient,
    RemoteDigest,
    parse_image_reference,
)
from containers_up.updates.scanner import ScanScheduler, UpdateScanner

__all__ = [
    "ImageReference",
    "RegistryClient",
    "RemoteDigest",
    "ScanScheduler",
    "UpdateScanner",
    "parse_image_reference",
]
