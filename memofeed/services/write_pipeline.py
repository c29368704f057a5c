"""
Write pipeline for feed events.

Builds a transaction carrying the event memo plus value transfers, has the
injected signer sign (and possibly send) it, and returns the signature as soon
as the gateway accepts it. Confirmation runs separately and is best effort.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Sequence

import structlog
from solders.hash import Hash
from solders.instruction import AccountMeta, Instruction
from solders.message import Message
from solders.pubkey import Pubkey
from solders.system_program import TransferParams, transfer
from solders.transaction import Transaction

from memofeed.core.config import LedgerConfig
from memofeed.core.exceptions import (
    ConfigurationError,
    MemoFeedException,
    SignerError,
    SignerUnavailableError,
    UserCancelled,
    ValidationError,
)
from memofeed.services.backoff import Sleep, call_with_retry
from memofeed.services.codec import (
    Event,
    LikeEvent,
    ManifestEvent,
    PublishEvent,
    encode,
)
from memofeed.services.confirmation_poller import ConfirmationPoller, ConfirmationResult
from memofeed.services.endpoint_pool import EndpointPool
from memofeed.services.fees import split_like_amount
from memofeed.services.gateway_client import is_valid_address
from memofeed.services.registry_resolver import RegistryResolver
from memofeed.services.signer import Signer, is_cancellation


logger = structlog.get_logger(__name__)

MEMO_PROGRAM = Pubkey.from_string(LedgerConfig.MEMO_PROGRAM_ID)


@dataclass(frozen=True)
class Transfer:
    """A lamport transfer from the signer to `recipient`."""
    recipient: str
    lamports: int


def transfer_instructions(payer: Pubkey, transfers: Sequence[Transfer]) -> List[Instruction]:
    """System transfers for every positive amount."""
    return [
        transfer(TransferParams(
            from_pubkey=payer,
            to_pubkey=Pubkey.from_string(item.recipient),
            lamports=item.lamports,
        ))
        for item in transfers
        if item.lamports > 0
    ]


def compile_transaction(instructions: List[Instruction], payer: Pubkey, blockhash: str) -> Transaction:
    message = Message.new_with_blockhash(instructions, payer, Hash.from_string(blockhash))
    return Transaction.new_unsigned(message)


def build_transaction(
    payer: Pubkey,
    registry: str,
    memo: bytes,
    transfers: Sequence[Transfer],
    blockhash: str,
) -> Transaction:
    """
    Unsigned transaction: 0-lamport anchor transfer to the registry, the
    caller's transfers, then the memo instruction.
    """
    registry_key = Pubkey.from_string(registry)
    instructions: List[Instruction] = [
        transfer(TransferParams(from_pubkey=payer, to_pubkey=registry_key, lamports=0))
    ]
    instructions.extend(transfer_instructions(payer, transfers))
    instructions.append(
        Instruction(
            program_id=MEMO_PROGRAM,
            data=memo,
            accounts=[
                AccountMeta(pubkey=payer, is_signer=True, is_writable=False),
                AccountMeta(pubkey=registry_key, is_signer=False, is_writable=False),
            ],
        )
    )
    return compile_transaction(instructions, payer, blockhash)


def check_transfers(transfers: Sequence[Transfer]) -> None:
    """Reject malformed recipients and amounts before anything goes on the wire."""
    for item in transfers:
        if not is_valid_address(item.recipient):
            raise ValidationError("Invalid recipient address", {"recipient": item.recipient})
        if int(item.lamports) < 0:
            raise ValidationError("Transfer amount cannot be negative", {"lamports": item.lamports})


class WritePipeline:
    """
    Two-phase writer: `submit()` returns the signature, `await_confirmation()`
    polls independently. `publish()` does both, leaving the poll in the background.
    """

    def __init__(
        self,
        pool: EndpointPool,
        resolver: RegistryResolver,
        poller: ConfirmationPoller,
        signer: Optional[Signer] = None,
        owner: Optional[str] = None,
        like_lamports: int = 5_000,
        superlike_lamports: int = 50_000,
        fee_bps: int = 1_000,
        blockhash_timeout: float = 5.0,
        submit_timeout: float = 9.0,
        clock: Callable[[], float] = time.time,
        sleep: Sleep = asyncio.sleep,
    ):
        self.logger = logger.bind(service="write_pipeline")
        self.pool = pool
        self.resolver = resolver
        self.poller = poller
        self.signer = signer
        self.owner = owner
        self.like_lamports = like_lamports
        self.superlike_lamports = superlike_lamports
        self.fee_bps = fee_bps
        self.blockhash_timeout = blockhash_timeout
        self.submit_timeout = submit_timeout
        self._clock = clock
        self._sleep = sleep
        self._confirmations: Dict[str, asyncio.Task] = {}

    def _require_signer(self) -> Signer:
        if self.signer is None:
            raise SignerUnavailableError()
        return self.signer

    async def _recent_blockhash(self) -> str:
        return await call_with_retry(
            lambda: self.pool.run(
                lambda client: client.get_latest_blockhash(),
                timeout=self.blockhash_timeout,
                label="get_latest_blockhash",
            ),
            label="get_latest_blockhash",
            sleep=self._sleep,
        )

    async def _sign_and_submit(self, signer: Signer, tx: Transaction) -> str:
        try:
            if hasattr(signer, "sign_and_send"):
                result = await signer.sign_and_send(tx)
                if isinstance(result, dict):
                    result = result.get("signature")
                return str(getattr(result, "signature", result))
            signed = await signer.sign(tx)
        except MemoFeedException:
            raise
        except Exception as e:
            if is_cancellation(e):
                raise UserCancelled() from e
            raise SignerError(f"Signer failed: {e}", {"error_type": type(e).__name__}) from e

        # Resending the same signed bytes cannot double-spend
        return await call_with_retry(
            lambda: self.pool.run(
                lambda client: client.send_raw_transaction(bytes(signed)),
                timeout=self.submit_timeout,
                label="send_raw_transaction",
            ),
            label="send_raw_transaction",
            sleep=self._sleep,
        )

    async def submit(self, event: Event, transfers: Iterable[Transfer] = ()) -> str:
        """
        Build, sign and submit; returns once the gateway accepts the transaction.

        Raises:
            SignerUnavailableError: no signer configured
            UserCancelled: the user declined to sign
            SignerError: the signer failed otherwise
            ValidationError: a transfer names a malformed recipient
        """
        signer = self._require_signer()
        transfers = list(transfers)
        check_transfers(transfers)
        try:
            memo = encode(event)
        except UnicodeEncodeError as e:
            raise ValidationError("Event text is not valid UTF-8", {"kind": event.kind}) from e
        blockhash = await self._recent_blockhash()
        registry = await self.resolver.select_registry_for_write()

        tx = build_transaction(
            payer=signer.pubkey,
            registry=registry,
            memo=memo,
            transfers=transfers,
            blockhash=blockhash,
        )
        signature = await self._sign_and_submit(signer, tx)
        self.logger.info("Transaction submitted", kind=event.kind, signature=signature[:20], registry=registry)
        return signature

    async def await_confirmation(self, signature: str) -> ConfirmationResult:
        """Join the background poll for `signature` if one is running, else poll now."""
        task = self._confirmations.get(signature)
        if task is not None:
            return await asyncio.shield(task)
        return await self.poller.poll(signature)

    async def publish(self, event: Event, transfers: Iterable[Transfer] = ()) -> str:
        """Submit and confirm in the background; returns the signature."""
        signature = await self.submit(event, transfers)
        self._track(signature)
        return signature

    def _track(self, signature: str) -> None:
        task = asyncio.create_task(self.poller.poll(signature))
        self._confirmations[signature] = task
        task.add_done_callback(lambda _: self._confirmations.pop(signature, None))

    @property
    def pending_confirmations(self) -> int:
        return len(self._confirmations)

    async def publish_post(self, content_key: str, text_lines: Sequence[str], watermark: Optional[str] = None) -> str:
        signer = self._require_signer()
        event = PublishEvent(
            content_key=content_key,
            text_lines=tuple(text_lines),
            creator=str(signer.pubkey),
            watermark=watermark,
        )
        return await self.publish(event)

    async def publish_like(
        self,
        content_id: str,
        creator: str,
        lamports: Optional[int] = None,
        superlike: bool = False,
    ) -> str:
        """Like with a tip: the fee goes to the owner, the rest to the creator."""
        signer = self._require_signer()
        if lamports is None:
            lamports = self.superlike_lamports if superlike else self.like_lamports
        total = max(1, int(lamports))
        fee, to_creator = split_like_amount(total, self.fee_bps)

        transfers = []
        if self.owner:
            transfers.append(Transfer(self.owner, fee))
        transfers.append(Transfer(creator, to_creator))

        event = LikeEvent(
            content_id=content_id,
            liker=str(signer.pubkey),
            amount_units=total,
            superlike=superlike,
        )
        return await self.publish(event, transfers)

    async def publish_manifest(self, registries: Sequence[str], tag: Optional[str] = None) -> str:
        """Owner-only: announce the active registry set."""
        signer = self._require_signer()
        if not self.owner or str(signer.pubkey) != self.owner:
            raise ValidationError("Only the owner can publish the registry manifest", {"signer": str(signer.pubkey)})

        unique: List[str] = []
        for address in registries:
            if address not in unique:
                unique.append(address)
        unique = unique[: self.resolver.max_registries]
        if not unique:
            raise ValidationError("At least one registry is required")

        event = ManifestEvent(
            tag=tag or self.resolver.manifest_tag,
            owner=self.owner,
            registries=tuple(unique),
            updated_at=int(self._clock()),
        )
        signature = await self.publish(event)
        self.resolver.invalidate()
        return signature

    async def publish_tip(self, lamports: int) -> str:
        """Plain transfer to the owner's tip jar; no memo, no registry."""
        signer = self._require_signer()
        if not self.owner:
            raise ConfigurationError("No tip recipient configured")
        if int(lamports) <= 0:
            raise ValidationError("Tip amount must be positive", {"lamports": lamports})
        transfers = [Transfer(self.owner, int(lamports))]
        check_transfers(transfers)

        blockhash = await self._recent_blockhash()
        tx = compile_transaction(transfer_instructions(signer.pubkey, transfers), signer.pubkey, blockhash)
        signature = await self._sign_and_submit(signer, tx)
        self.logger.info("Tip submitted", lamports=int(lamports), signature=signature[:20])
        self._track(signature)
        return signature

    async def close(self):
        """Cancel background confirmations; the writes themselves are unaffected."""
        tasks = list(self._confirmations.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._confirmations.clear()
