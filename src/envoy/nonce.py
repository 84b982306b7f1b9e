"""
Revocation nonce reads.

The nonce enforcer keeps one counter per (delegation manager,
delegator). Every delegation carrying a nonce caveat is valid only
while that counter equals the signed value; advancing it on-chain
invalidates all of them at once.

Reads always go to the chain. Nothing here caches or reserves a
nonce, so two delegations built concurrently for the same delegator
receive the same value.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional, Sequence

from .caveats import AllowedCalldataCaveat, Scope
from .config import DelegationFramework
from .delegation import DelegationDraft, DelegationFactory
from .retry import Poller, PollTimeout
from .rpc import ChainClient

logger = logging.getLogger(__name__)


@dataclass
class NonceRevocationTracker:
    chain: ChainClient
    framework: DelegationFramework

    async def current_nonce(self, delegator: str) -> int:
        nonce = await self.chain.current_nonce(
            self.framework.nonce, self.framework.delegation_manager, delegator
        )
        logger.debug("Current revocation nonce for %s: %d", delegator, nonce)
        return nonce

    async def is_nonce_valid(self, delegator: str, delegation_nonce: int) -> bool:
        return await self.current_nonce(delegator) == delegation_nonce

    async def wait_for_consumption(
        self,
        delegator: str,
        nonce: int,
        timeout: float = 30.0,
        interval: float = 1.0,
        cancel: Optional[asyncio.Event] = None,
    ) -> bool:
        """True once the on-chain nonce moves past ``nonce``; False on timeout."""
        poller = Poller(interval=interval, max_duration=timeout, cancel=cancel)

        async def advanced() -> Optional[bool]:
            return True if await self.current_nonce(delegator) > nonce else None

        try:
            return await poller.poll(advanced, label=f"nonce {nonce} consumption")
        except PollTimeout:
            return False

    async def build_ephemeral(
        self,
        factory: DelegationFactory,
        delegator: str,
        delegate: str,
        scope: Scope,
        pins: Sequence[AllowedCalldataCaveat] = (),
        now: Optional[int] = None,
    ) -> DelegationDraft:
        """Ephemeral delegation bound to the delegator's current on-chain nonce."""
        nonce = await self.current_nonce(delegator)
        return factory.ephemeral(delegator, delegate, scope, nonce=nonce, pins=pins, now=now)
