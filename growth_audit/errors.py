"""
Exception taxonomy for the table growth audit.

Only ConfigurationError is fatal. Every other error is caught at the branch
that owns it (region, instance, schema or shipment) and recorded in the
run summary so that unaffected branches can complete.
"""
from typing import Optional


class AuditError(Exception):
    """Base class for audit failures."""

    def __init__(self, message: str, original_error: Optional[Exception] = None):
        self.original_error = original_error
        super().__init__(message)


class ConfigurationError(AuditError):
    """A required setting is missing or invalid."""


class DiscoveryError(AuditError):
    """Listing instances in a region failed."""

    def __init__(self, message: str, region: str, original_error: Optional[Exception] = None):
        self.region = region
        super().__init__(message, original_error)


class TagRetrievalError(AuditError):
    """Fetching the tags of a single instance failed."""


class CredentialError(AuditError):
    """Credentials for an instance could not be resolved."""


class SchemaListError(AuditError):
    """An instance has no schemas to audit."""


class CollectionError(AuditError):
    """Connecting to or querying an instance failed."""


class ShippingError(AuditError):
    """Transmitting metrics to the sink failed."""
