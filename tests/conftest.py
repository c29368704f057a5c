"""
Shared fixtures: an in-memory ledger behind fake gateway clients, a
controllable clock and a sleep that returns at once.
"""

from typing import Any, Dict, List, Optional, Sequence, Union

import pytest
from solders.hash import Hash
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.transaction import Transaction

from memofeed.core.config import LedgerConfig
from memofeed.services.backoff import CallSpacer
from memofeed.services.codec import Event, encode
from memofeed.services.endpoint_pool import EndpointPool
from memofeed.services.gateway_client import SignatureInfo
from memofeed.services.ledger_reader import LedgerReader


def new_address() -> str:
    return str(Pubkey.new_unique())


_LEDGER_KEY = Keypair()


def new_signature(seed: int) -> str:
    """A well-formed, distinct signature per seed."""
    return str(_LEDGER_KEY.sign_message(seed.to_bytes(8, "big")))


def make_tx(
    memo: str,
    signer: str,
    slot: int,
    block_time: Optional[int],
    registry: Optional[str] = None,
    err: Any = None,
) -> Dict[str, Any]:
    """A jsonParsed transaction carrying one memo instruction."""
    keys = [{"pubkey": signer, "signer": True, "writable": True, "source": "transaction"}]
    if registry:
        keys.append({"pubkey": registry, "signer": False, "writable": True, "source": "transaction"})
    keys.append({"pubkey": LedgerConfig.MEMO_PROGRAM_ID, "signer": False, "writable": False, "source": "transaction"})
    return {
        "slot": slot,
        "blockTime": block_time,
        "transaction": {
            "message": {
                "accountKeys": keys,
                "instructions": [
                    {"programId": LedgerConfig.MEMO_PROGRAM_ID, "program": "spl-memo", "parsed": memo},
                ],
            },
            "signatures": [],
        },
        "meta": {"err": err, "logMessages": []},
    }


class FakeClock:
    """Callable clock advanced by hand."""

    def __init__(self, now: float = 1_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeSleep:
    """Records requested delays without waiting."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


class FakeLedger:
    """Address histories, transaction bodies and statuses shared by all fake clients."""

    def __init__(self):
        self.history: Dict[str, List[SignatureInfo]] = {}
        self.transactions: Dict[str, Dict[str, Any]] = {}
        self.statuses: Dict[str, str] = {}
        self.failures: Dict[tuple, Exception] = {}
        self.broken_bodies: Dict[str, Exception] = {}
        self.broken_histories: Dict[str, Exception] = {}
        self.calls: List[tuple] = []
        self.sent: List[bytes] = []
        self.blockhash = str(Hash.default())
        self._slot = 100

    def add(
        self,
        addresses: Union[str, Sequence[str]],
        memo: Union[Event, str],
        signer: Optional[str] = None,
        block_time: Optional[int] = None,
        err: Any = None,
    ) -> str:
        """Record one transaction in the history of every address given."""
        if isinstance(addresses, str):
            addresses = [addresses]
        self._slot += 1
        signature = new_signature(self._slot)
        text = memo if isinstance(memo, str) else encode(memo).decode("utf-8")
        signer = signer or new_address()
        block_time = block_time if block_time is not None else 1_700_000_000 + self._slot
        self.transactions[signature] = make_tx(text, signer, self._slot, block_time, addresses[0], err)
        for address in addresses:
            self.history.setdefault(address, []).insert(
                0, SignatureInfo(signature=signature, slot=self._slot, block_time=block_time, err=err)
            )
        return signature

    def add_transfer(self, recipient: str, sender: str, lamports: int, err: Any = None) -> str:
        """Record a plain transfer in the recipient's history, with balances."""
        self._slot += 1
        signature = new_signature(self._slot)
        block_time = 1_700_000_000 + self._slot
        tx = make_tx("", sender, self._slot, block_time, recipient, err)
        tx["transaction"]["message"]["instructions"] = []
        tx["transaction"]["signatures"] = [signature]
        tx["meta"]["preBalances"] = [10_000_000, 1_000_000, 1]
        tx["meta"]["postBalances"] = [10_000_000 - lamports - 5_000, 1_000_000 + lamports, 1]
        self.transactions[signature] = tx
        self.history.setdefault(recipient, []).insert(
            0, SignatureInfo(signature=signature, slot=self._slot, block_time=block_time, err=err)
        )
        return signature

    def fail(self, url: str, method: str, exc: Exception) -> None:
        self.failures[(url, method)] = exc

    def heal(self, url: str, method: Optional[str] = None) -> None:
        for key in list(self.failures):
            if key[0] == url and (method is None or key[1] == method):
                del self.failures[key]

    def count(self, method: str, url: Optional[str] = None) -> int:
        return sum(1 for call in self.calls if call[1] == method and (url is None or call[0] == url))


class FakeClient:
    """Gateway client over a FakeLedger."""

    def __init__(self, url: str, ledger: FakeLedger):
        self.url = url
        self.ledger = ledger
        self.closed = False

    def _enter(self, method: str) -> None:
        self.ledger.calls.append((self.url, method))
        exc = self.ledger.failures.get((self.url, method))
        if exc is not None:
            raise exc

    async def get_latest_blockhash(self) -> str:
        self._enter("get_latest_blockhash")
        return self.ledger.blockhash

    async def get_signatures_for_address(self, address: str, before: Optional[str] = None, limit: int = 100):
        self._enter("get_signatures_for_address")
        if address in self.ledger.broken_histories:
            raise self.ledger.broken_histories[address]
        infos = self.ledger.history.get(address, [])
        if before:
            index = next((i for i, info in enumerate(infos) if info.signature == before), None)
            infos = infos[index + 1:] if index is not None else []
        return list(infos[:limit])

    async def get_transaction(self, signature: str):
        self._enter("get_transaction")
        if signature in self.ledger.broken_bodies:
            raise self.ledger.broken_bodies[signature]
        return self.ledger.transactions.get(signature)

    async def get_signature_statuses(self, signatures: List[str]):
        self._enter("get_signature_statuses")
        return [self.ledger.statuses.get(sig) for sig in signatures]

    async def send_raw_transaction(self, payload: bytes) -> str:
        self._enter("send_raw_transaction")
        self.ledger.sent.append(payload)
        return str(Transaction.from_bytes(payload).signatures[0])

    async def close(self):
        self.closed = True


def make_pool(ledger: FakeLedger, urls: Sequence[str], clock: FakeClock) -> EndpointPool:
    return EndpointPool(
        urls,
        client_factory=lambda url: FakeClient(url, ledger),
        clock=clock,
        probe_timeout=1.0,
        cooldown_base=3.0,
        cooldown_cap=30.0,
    )


@pytest.fixture
def ledger() -> FakeLedger:
    return FakeLedger()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleep() -> FakeSleep:
    return FakeSleep()


@pytest.fixture
def urls() -> List[str]:
    return ["https://rpc-a.test", "https://rpc-b.test", "https://rpc-c.test"]


@pytest.fixture
def pool(ledger, urls, clock) -> EndpointPool:
    return make_pool(ledger, urls, clock)


@pytest.fixture
def reader(pool, sleep) -> LedgerReader:
    return LedgerReader(pool, spacer=CallSpacer(0.0, sleep=sleep), max_attempts=3, sleep=sleep)


@pytest.fixture
def owner() -> str:
    return new_address()
