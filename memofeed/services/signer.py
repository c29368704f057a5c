"""
Signing capabilities for the write pipeline.

A signer exposes `pubkey` and either `sign_and_send(tx) -> signature` (the
signer submits itself) or `sign(tx) -> signed transaction` (we submit).
"""

import json
from pathlib import Path
from typing import Any, Protocol, Union, runtime_checkable

from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.transaction import Transaction

from memofeed.core.exceptions import ConfigurationError


CANCELLATION_CODES = (4001,)
CANCELLATION_MARKERS = ("user rejected", "rejected the request", "cancelled", "canceled", "declined")


@runtime_checkable
class Signer(Protocol):
    @property
    def pubkey(self) -> Pubkey: ...


def is_cancellation(exc: BaseException) -> bool:
    """True for wallet errors that mean the user said no."""
    code = getattr(exc, "code", None)
    if code in CANCELLATION_CODES:
        return True
    text = str(exc).lower()
    return any(marker in text for marker in CANCELLATION_MARKERS)


class KeypairSigner:
    """Signs locally with a solders Keypair; submission goes through the pool."""

    def __init__(self, keypair: Keypair):
        self.keypair = keypair

    @property
    def pubkey(self) -> Pubkey:
        return self.keypair.pubkey()

    async def sign(self, tx: Transaction) -> Transaction:
        message = tx.message
        return Transaction([self.keypair], message, message.recent_blockhash)

    @classmethod
    def from_secret(cls, secret: Union[str, Path]) -> "KeypairSigner":
        """
        Load a keypair from a base58 secret or a Solana CLI JSON key file.
        """
        try:
            if isinstance(secret, Path) or str(secret).endswith(".json"):
                raw: Any = json.loads(Path(secret).expanduser().read_text())
                return cls(Keypair.from_bytes(bytes(raw)))
            return cls(Keypair.from_base58_string(str(secret).strip()))
        except (OSError, ValueError, TypeError) as e:
            raise ConfigurationError("Could not load signing keypair", {"error": str(e)})
