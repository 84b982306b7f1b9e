"""
Envoy error types.

Specific exceptions for different failure modes, enabling callers
to handle each case appropriately (retry, re-prompt, abort, record).
"""

from typing import Optional


class EnvoyError(Exception):
    """Base error for all Envoy operations."""
    pass


class ConfigurationError(EnvoyError):
    """Wallet, session or endpoint not initialized. Never retried."""
    pass


class ValidationError(EnvoyError):
    """Request rejected locally before any network or signing call."""
    def __init__(self, message: str, errors: Optional[list[str]] = None):
        self.errors = list(errors) if errors else [message]
        super().__init__(message)

    @classmethod
    def from_errors(cls, errors: list[str]) -> "ValidationError":
        return cls("; ".join(errors), errors=errors)


class StoreError(EnvoyError):
    """Local delegation or agent state is missing or corrupt."""
    pass


# Network errors
class NetworkError(EnvoyError):
    """Network-level failures (DNS, connection refused, etc.)."""
    pass


class TransientNetworkError(NetworkError):
    """Error that may succeed if retried (timeouts, 429/5xx, resets)."""
    def __init__(self, message: str, retry_after: float = 0.0):
        self.retry_after = retry_after
        super().__init__(message)


class RpcError(NetworkError):
    """JSON-RPC endpoint answered with an error object."""
    def __init__(self, code: int, message: str, method: str = ""):
        self.code = code
        self.rpc_message = message
        self.method = method
        prefix = f"{method}: " if method else ""
        super().__init__(f"{prefix}RPC error {code}: {message}")


class BundlerError(EnvoyError):
    """Bundler or paymaster rejected a user operation."""
    pass


# Execution errors
class OnChainRevertError(EnvoyError):
    """Transaction was mined but reverted. Not retried automatically."""

    fatal_for_agent = False

    def __init__(self, tx_hash: str, message: str = "Transaction reverted on-chain"):
        self.tx_hash = tx_hash
        super().__init__(message)


# Signing errors
class SignatureError(EnvoyError):
    """Secure-enclave or key signing failed."""
    pass


class SignatureCancelledError(SignatureError):
    """User dismissed the signing prompt."""
    pass
