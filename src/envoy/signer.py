"""
Signing interface for delegations.

The secure-enclave signer lives outside this package; it is consumed
through the SignatureBroker protocol. LocalKeySigner signs with an
in-process key and is used for agent session keys.
"""

from __future__ import annotations

import logging
from typing import Protocol

from eth_account.signers.local import LocalAccount

from .delegation import Delegation, DelegationKind, SignedDelegation, signing_label
from .errors import SignatureCancelledError, SignatureError

logger = logging.getLogger(__name__)


class SignatureBroker(Protocol):
    """Turns a domain-separated digest into a signature."""

    @property
    def address(self) -> str: ...

    async def sign_digest(self, digest: bytes, label: str) -> str:
        """
        Return a 0x-prefixed signature over ``digest``.

        Raises SignatureCancelledError when the user dismisses the prompt
        and SignatureError for any other signing failure.
        """
        ...


class LocalKeySigner:
    """SignatureBroker backed by an eth_account LocalAccount."""

    def __init__(self, account: LocalAccount):
        self._account = account

    @property
    def address(self) -> str:
        return self._account.address

    async def sign_digest(self, digest: bytes, label: str) -> str:
        logger.debug("Signing %s for %s", label, self._account.address)
        signed = self._account.unsafe_sign_hash(digest)
        return "0x" + signed.signature.hex()


async def sign_delegation(
    broker: SignatureBroker,
    delegation: Delegation,
    kind: DelegationKind,
    chain_id: int,
    delegation_manager: str,
    label: str = "",
) -> SignedDelegation:
    """Sign a delegation and wrap it as an immutable SignedDelegation."""
    digest = delegation.signing_digest(chain_id, delegation_manager)
    try:
        signature = await broker.sign_digest(digest, label or signing_label(kind))
    except SignatureCancelledError:
        logger.info("Signing cancelled for %s delegation", kind.value)
        raise
    except SignatureError:
        raise
    except Exception as e:
        raise SignatureError(f"Signing failed: {e}") from e
    if not signature or not signature.startswith("0x"):
        raise SignatureError("Signer returned an empty signature")
    return SignedDelegation(delegation=delegation, signature=signature)
