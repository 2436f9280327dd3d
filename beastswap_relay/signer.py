"""
Payout wallet signer.

The payout wallet's balance is shared by every request, so all
disbursements go through one signer and hold its lock from balance check
to confirmation.
"""

import asyncio
import json
from contextlib import asynccontextmanager
from typing import AsyncIterator, Sequence

import base58
import structlog
from solders.hash import Hash
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.transaction import Transaction

from .errors import ConfigurationError

logger = structlog.get_logger()

KEYPAIR_LENGTH = 64


def load_keypair(secret: str) -> Keypair:
    """
    Load a keypair from a secret string.

    Accepts the Solana CLI JSON format (array of 64 byte values) or a
    base58-encoded 64-byte secret key (wallet export format).

    Raises:
        ConfigurationError: if the secret is not a valid keypair
    """
    secret = secret.strip()
    try:
        if secret.startswith("["):
            raw = bytes(json.loads(secret))
        else:
            raw = base58.b58decode(secret)
    except (ValueError, TypeError) as e:
        raise ConfigurationError("PRIVATE_KEY is not a valid Solana keypair") from e

    if len(raw) != KEYPAIR_LENGTH:
        raise ConfigurationError(f"PRIVATE_KEY must be {KEYPAIR_LENGTH} bytes, got {len(raw)}")

    try:
        return Keypair.from_bytes(raw)
    except ValueError as e:
        raise ConfigurationError("PRIVATE_KEY is not a valid Solana keypair") from e


class PayoutSigner:
    """Owns the payout keypair and serializes access to it."""

    def __init__(self, keypair: Keypair):
        self._keypair = keypair
        self._lock = asyncio.Lock()

    @classmethod
    def from_secret(cls, secret: str) -> "PayoutSigner":
        signer = cls(load_keypair(secret))
        logger.info("payout_signer_loaded", address=str(signer.pubkey))
        return signer

    @property
    def pubkey(self) -> Pubkey:
        return self._keypair.pubkey()

    @property
    def locked(self) -> bool:
        return self._lock.locked()

    @asynccontextmanager
    async def exclusive(self) -> AsyncIterator["PayoutSigner"]:
        """Hold the signer for one disbursement."""
        async with self._lock:
            yield self

    def sign_transaction(self, instructions: Sequence[Instruction], blockhash: str) -> Transaction:
        """Build and sign a transaction paid for by the payout wallet."""
        recent_blockhash = Hash.from_string(blockhash)
        message = Message.new_with_blockhash(list(instructions), self.pubkey, recent_blockhash)
        return Transaction([self._keypair], message, recent_blockhash)
