"""
Sub-agent wallet keys.

Each sub-agent redeems from its own externally-owned account. Keys are
generated locally and stored one per file under the secrets directory
with owner-only permissions; callers only ever receive a LocalAccount.
"""

from __future__ import annotations

import logging
import secrets
from pathlib import Path
from typing import Optional

from eth_account import Account
from eth_account.signers.local import LocalAccount

from .errors import ConfigurationError
from .storage import ensure_private_dir, ensure_private_file, safe_child_path

logger = logging.getLogger(__name__)

DEFAULT_KEYRING_DIR = Path.home() / ".envoy-secrets" / "agents"


class AgentKeyring:
    def __init__(self, base_dir: Optional[Path] = None):
        self.base_dir = base_dir or DEFAULT_KEYRING_DIR
        ensure_private_dir(self.base_dir)

    def _key_path(self, wallet_id: str) -> Path:
        return safe_child_path(self.base_dir, wallet_id, ".key")

    def create_wallet(self) -> tuple[str, str]:
        """Generate a key; return (wallet_id, address)."""
        account = Account.create()
        wallet_id = f"w_{secrets.token_hex(8)}"
        path = self._key_path(wallet_id)
        ensure_private_file(path)
        path.write_text(account.key.hex())
        logger.info("Created agent wallet %s (%s)", wallet_id, account.address)
        return wallet_id, account.address

    def load_account(self, wallet_id: str) -> LocalAccount:
        path = self._key_path(wallet_id)
        if not path.exists():
            raise ConfigurationError(f"Agent wallet {wallet_id} not found")
        key = path.read_text().strip()
        return Account.from_key(key if key.startswith("0x") else "0x" + key)

    def delete_wallet(self, wallet_id: str) -> bool:
        path = self._key_path(wallet_id)
        if not path.exists():
            return False
        path.unlink()
        return True
