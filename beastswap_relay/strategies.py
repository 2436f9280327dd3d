"""
Disbursement strategies: how a payout reaches the buyer.

- NativeTransferStrategy: system transfer of lamports to the buyer's address
- TokenTransferStrategy: SPL transfer_checked into the buyer's associated
  token account, created in the same transaction when missing
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field

import httpx
import structlog
from solders.instruction import Instruction
from solders.pubkey import Pubkey
from solders.system_program import TransferParams, transfer
from spl.token.constants import TOKEN_PROGRAM_ID
from spl.token.instructions import (
    create_associated_token_account,
    get_associated_token_address,
    transfer_checked,
)
from spl.token.models import TransferCheckedParams

from .errors import AccountResolutionFailed, InsufficientFunds, SubmissionFailed
from .rpc import SolanaRPC, SolanaRPCError
from .signer import PayoutSigner

logger = structlog.get_logger()


@dataclass
class TransferPlan:
    """Instructions for one payout transaction."""

    destination: Pubkey  # Account credited by the transfer
    instructions: list[Instruction] = field(default_factory=list)
    creates_account: bool = False


class DisbursementStrategy(ABC):
    """Resolves the payout destination and builds the transfer instructions."""

    name: str = ""

    def __init__(self, rpc: SolanaRPC, signer: PayoutSigner, commitment: str = "confirmed"):
        self.rpc = rpc
        self.signer = signer
        self.commitment = commitment

    @abstractmethod
    async def plan(self, recipient: Pubkey, amount: int) -> TransferPlan:
        """
        Build the instructions paying `amount` base units to `recipient`.

        Raises:
            AccountResolutionFailed: destination cannot be resolved
        """

    @abstractmethod
    async def ensure_funds(self, amount: int) -> None:
        """
        Check the payout wallet can cover `amount`.

        Raises:
            InsufficientFunds: payout wallet balance is too low
        """


class NativeTransferStrategy(DisbursementStrategy):
    """Pays out lamports with a system transfer."""

    name = "native"

    def __init__(
        self,
        rpc: SolanaRPC,
        signer: PayoutSigner,
        commitment: str = "confirmed",
        fee_reserve_lamports: int = 10_000,
    ):
        super().__init__(rpc, signer, commitment)
        self.fee_reserve_lamports = fee_reserve_lamports

    async def plan(self, recipient: Pubkey, amount: int) -> TransferPlan:
        ix = transfer(
            TransferParams(
                from_pubkey=self.signer.pubkey,
                to_pubkey=recipient,
                lamports=amount,
            )
        )
        return TransferPlan(destination=recipient, instructions=[ix])

    async def ensure_funds(self, amount: int) -> None:
        try:
            balance = await self.rpc.get_balance(str(self.signer.pubkey), commitment=self.commitment)
        except (SolanaRPCError, httpx.HTTPError) as e:
            raise SubmissionFailed("Could not read payout wallet balance", broadcast=False) from e

        required = amount + self.fee_reserve_lamports
        if balance < required:
            logger.error(
                "payout_balance_insufficient",
                payout_address=str(self.signer.pubkey),
                balance=balance,
                required=required,
            )
            raise InsufficientFunds(
                "Payout wallet has insufficient SOL",
                balance=balance,
                required=required,
            )


class TokenTransferStrategy(DisbursementStrategy):
    """Pays out SPL tokens to the recipient's associated token account."""

    name = "token"

    def __init__(
        self,
        rpc: SolanaRPC,
        signer: PayoutSigner,
        mint: Pubkey,
        decimals: int,
        commitment: str = "confirmed",
    ):
        super().__init__(rpc, signer, commitment)
        self.mint = mint
        self.decimals = decimals

    @property
    def source(self) -> Pubkey:
        """Payout wallet's associated token account."""
        return get_associated_token_address(self.signer.pubkey, self.mint)

    async def plan(self, recipient: Pubkey, amount: int) -> TransferPlan:
        destination = get_associated_token_address(recipient, self.mint)
        try:
            account = await self.rpc.get_account_info(str(destination), commitment=self.commitment)
        except (SolanaRPCError, httpx.HTTPError) as e:
            raise AccountResolutionFailed("Could not look up recipient token account") from e

        instructions: list[Instruction] = []
        creates_account = account is None
        if creates_account:
            logger.info(
                "recipient_token_account_missing",
                recipient=str(recipient),
                token_account=str(destination),
            )
            instructions.append(create_associated_token_account(self.signer.pubkey, recipient, self.mint))
        elif account.get("owner") != str(TOKEN_PROGRAM_ID):
            raise AccountResolutionFailed(
                "Recipient token account is not owned by the token program",
                token_account=str(destination),
                owner=account.get("owner"),
            )

        instructions.append(
            transfer_checked(
                TransferCheckedParams(
                    program_id=TOKEN_PROGRAM_ID,
                    source=self.source,
                    mint=self.mint,
                    dest=destination,
                    owner=self.signer.pubkey,
                    amount=amount,
                    decimals=self.decimals,
                )
            )
        )
        return TransferPlan(destination=destination, instructions=instructions, creates_account=creates_account)

    async def ensure_funds(self, amount: int) -> None:
        try:
            balance = await self.rpc.get_token_account_balance(str(self.source), commitment=self.commitment)
        except SolanaRPCError as e:
            # Missing source account: the payout wallet holds none of the token
            raise InsufficientFunds("Payout wallet has no token account for the payout mint") from e
        except httpx.HTTPError as e:
            raise SubmissionFailed("Could not read payout token balance", broadcast=False) from e

        if balance < amount:
            logger.error(
                "payout_token_balance_insufficient",
                token_account=str(self.source),
                balance=balance,
                required=amount,
            )
            raise InsufficientFunds(
                "Payout wallet has insufficient tokens",
                balance=balance,
                required=amount,
            )
