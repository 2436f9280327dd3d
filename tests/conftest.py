"""
Shared fixtures: an in-memory Solana RPC and wallet/ledger helpers.
"""

from __future__ import annotations

import json
from decimal import Decimal
from typing import Any, Optional

import pytest
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.transaction import Transaction

from beastswap_relay.config import Settings
from beastswap_relay.disbursement import DisbursementExecutor
from beastswap_relay.ledger import PaymentLedger
from beastswap_relay.rpc import SolanaRPCError
from beastswap_relay.service import PaymentRelayService
from beastswap_relay.signer import PayoutSigner
from beastswap_relay.strategies import NativeTransferStrategy
from beastswap_relay.validation import RequestValidator
from beastswap_relay.verifier import SYSTEM_PROGRAM_ID, WindowPaymentVerifier

BLOCKHASH = "11111111111111111111111111111111"
EXCHANGE_RATE = 100_000_000


def new_address() -> str:
    return str(Pubkey.new_unique())


def keypair_secret(keypair: Keypair) -> str:
    """Solana CLI keypair file format."""
    return json.dumps(list(bytes(keypair)))


def transfer_tx(
    sender: str,
    destination: str,
    lamports: int,
    slot: int = 1,
    err: Any = None,
    program_id: str = SYSTEM_PROGRAM_ID,
    instruction_type: str = "transfer",
) -> dict[str, Any]:
    """A jsonParsed getTransaction result with one system transfer."""
    return {
        "slot": slot,
        "blockTime": 1_700_000_000 + slot,
        "meta": {"err": err, "fee": 5000},
        "transaction": {
            "message": {
                "accountKeys": [
                    {"pubkey": sender, "signer": True, "writable": True},
                    {"pubkey": destination, "signer": False, "writable": True},
                    {"pubkey": SYSTEM_PROGRAM_ID, "signer": False, "writable": False},
                ],
                "instructions": [
                    {
                        "programId": program_id,
                        "program": "system",
                        "parsed": {
                            "type": instruction_type,
                            "info": {
                                "source": sender,
                                "destination": destination,
                                "lamports": lamports,
                            },
                        },
                    }
                ],
            },
            "signatures": ["sig"],
        },
    }


class FakeSolanaRPC:
    """
    In-memory stand-in for SolanaRPC.

    `history` holds signature entries for the receiving wallet, newest first.
    Error queues (`send_errors`, `blockhash_errors`) are consumed one per call.
    """

    def __init__(self, receiving_address: str):
        self.receiving_address = receiving_address
        self.history: list[dict[str, Any]] = []
        self.transactions: dict[str, Optional[dict[str, Any]]] = {}
        self.balances: dict[str, int] = {}
        self.token_balances: dict[str, int] = {}
        self.accounts: dict[str, dict[str, Any]] = {}
        self.send_errors: list[Exception] = []
        self.blockhash_errors: list[Exception] = []
        self.signature_fetch_error: Optional[Exception] = None
        self.confirmation_status: Optional[str] = "confirmed"
        self.status_error: Any = None
        self.healthy = True
        self.sent: list[Transaction] = []
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.closed = False
        self._slot = 0

    def add_inbound(
        self,
        sender: str,
        sol: str,
        destination: Optional[str] = None,
        err: Any = None,
        **tx_kwargs: Any,
    ) -> str:
        """Record a SOL transfer into the receiving wallet. Returns its signature."""
        self._slot += 1
        signature = f"inbound{self._slot:04d}"
        lamports = int(Decimal(sol) * 1_000_000_000)
        self.history.insert(
            0,
            {
                "signature": signature,
                "slot": self._slot,
                "err": err,
                "confirmationStatus": "finalized",
            },
        )
        self.transactions[signature] = transfer_tx(
            sender,
            destination or self.receiving_address,
            lamports,
            slot=self._slot,
            err=err,
            **tx_kwargs,
        )
        return signature

    # SolanaRPC interface

    async def close(self) -> None:
        self.closed = True

    async def check_connectivity(self) -> bool:
        return self.healthy

    async def get_signatures_for_address(
        self,
        address: str,
        limit: int = 10,
        before: Optional[str] = None,
        until: Optional[str] = None,
        commitment: Optional[str] = None,
    ) -> list[dict[str, Any]]:
        self.calls.append(("getSignaturesForAddress", {"limit": limit, "before": before, "until": until}))
        if self.signature_fetch_error:
            raise self.signature_fetch_error

        entries = list(self.history)
        if before is not None:
            index = [e.get("signature") for e in entries].index(before)
            entries = entries[index + 1 :]

        page = []
        for entry in entries:
            if until is not None and entry.get("signature") == until:
                break
            page.append(entry)
        return page[:limit]

    async def get_transaction(self, signature: str, commitment: Optional[str] = None) -> Optional[dict[str, Any]]:
        self.calls.append(("getTransaction", {"signature": signature}))
        return self.transactions.get(signature)

    async def get_latest_blockhash(self, commitment: Optional[str] = None) -> str:
        self.calls.append(("getLatestBlockhash", {}))
        if self.blockhash_errors:
            raise self.blockhash_errors.pop(0)
        return BLOCKHASH

    async def get_balance(self, address: str, commitment: Optional[str] = None) -> int:
        return self.balances.get(address, 0)

    async def get_account_info(self, address: str, commitment: Optional[str] = None) -> Optional[dict[str, Any]]:
        return self.accounts.get(address)

    async def get_token_account_balance(self, address: str, commitment: Optional[str] = None) -> int:
        if address not in self.token_balances:
            raise SolanaRPCError(-32602, "Invalid param: could not find account")
        return self.token_balances[address]

    async def get_signature_statuses(self, signatures: list[str]) -> list[Optional[dict[str, Any]]]:
        if self.confirmation_status is None:
            return [None for _ in signatures]
        return [
            {
                "slot": self._slot,
                "confirmations": None,
                "err": self.status_error,
                "confirmationStatus": self.confirmation_status,
            }
            for _ in signatures
        ]

    async def send_transaction(self, raw_tx: bytes, preflight_commitment: Optional[str] = None) -> str:
        self.calls.append(("sendTransaction", {}))
        if self.send_errors:
            raise self.send_errors.pop(0)
        tx = Transaction.from_bytes(raw_tx)
        self.sent.append(tx)
        return str(tx.signatures[0])


@pytest.fixture
def receiving_address() -> str:
    return new_address()


@pytest.fixture
def sender() -> str:
    return new_address()


@pytest.fixture
def payout_keypair() -> Keypair:
    return Keypair()


@pytest.fixture
def signer(payout_keypair: Keypair) -> PayoutSigner:
    return PayoutSigner(payout_keypair)


@pytest.fixture
def fake_rpc(receiving_address: str, payout_keypair: Keypair) -> FakeSolanaRPC:
    rpc = FakeSolanaRPC(receiving_address)
    rpc.balances[str(payout_keypair.pubkey())] = 1_000 * 1_000_000_000
    return rpc


@pytest.fixture
def ledger(tmp_path) -> PaymentLedger:
    ledger = PaymentLedger(f"sqlite:///{tmp_path / 'relay.db'}")
    yield ledger
    ledger.close()


@pytest.fixture
def settings(receiving_address: str, payout_keypair: Keypair, tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        SOL_WALLET=receiving_address,
        PRIVATE_KEY=keypair_secret(payout_keypair),
        DATABASE_URL=f"sqlite:///{tmp_path / 'settings.db'}",
        JSON_LOGS=False,
    )


def build_service(
    rpc: FakeSolanaRPC,
    signer: PayoutSigner,
    ledger: Optional[PaymentLedger] = None,
    request_timeout: float = 5.0,
    **executor_kwargs: Any,
) -> PaymentRelayService:
    """Wire a service against the fake RPC (native payouts, window verification)."""
    executor_kwargs.setdefault("retry_delay", 0)
    executor_kwargs.setdefault("poll_interval", 0)
    executor_kwargs.setdefault("confirm_timeout", 1.0)
    strategy = NativeTransferStrategy(rpc, signer)
    executor = DisbursementExecutor(rpc, signer, strategy, exchange_rate=EXCHANGE_RATE, **executor_kwargs)
    verifier = WindowPaymentVerifier(rpc, rpc.receiving_address, ledger=ledger)
    return PaymentRelayService(
        rpc=rpc,
        validator=RequestValidator(Decimal("0.1"), EXCHANGE_RATE),
        verifier=verifier,
        executor=executor,
        ledger=ledger,
        request_timeout=request_timeout,
    )


@pytest.fixture
def service(fake_rpc: FakeSolanaRPC, signer: PayoutSigner, ledger: PaymentLedger) -> PaymentRelayService:
    return build_service(fake_rpc, signer, ledger)
