"""Shared exception types for the rebalancing orchestrator."""

from typing import Optional


class ConfigurationError(RuntimeError):
    """Raised at startup when required configuration or secrets are missing."""


class UnauthorizedTrigger(PermissionError):
    """Raised when a cycle trigger presents a wrong or missing shared secret."""


class StoreUnavailable(RuntimeError):
    """Raised when the shared key-value store cannot be reached."""

    def __init__(self, operation: str, original: Optional[Exception] = None):
        super().__init__(f"store unavailable during {operation}: {original}" if original else operation)
        self.operation = operation
        self.original = original


class VaultDataUnavailable(RuntimeError):
    """Raised when vault or position data cannot be fetched safely."""

    def __init__(self, source: str, original: Optional[Exception] = None):
        super().__init__(source)
        self.source = source
        self.original = original


class PriceFeedUnavailable(RuntimeError):
    """Raised when the settlement-asset price feed cannot be read."""


class CredentialError(RuntimeError):
    """Raised when a sealed session credential cannot be unsealed."""


class ExecutionFailed(RuntimeError):
    """Raised by execution adapters on transport-level failures."""
