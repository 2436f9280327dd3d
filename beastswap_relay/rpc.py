"""
Solana JSON-RPC client for signature lookups, transactions and submission.
"""

import base64
from typing import Any, Optional

import httpx
from pydantic import BaseModel


class SolanaRPCConfig(BaseModel):
    """Configuration for Solana RPC connection."""

    url: str = "https://api.mainnet-beta.solana.com"
    timeout: float = 30.0
    commitment: str = "confirmed"


class SolanaRPCError(Exception):
    """Error object returned by a Solana RPC call."""

    def __init__(self, code: int, message: str, data: Any = None):
        self.code = code
        self.message = message
        self.data = data
        super().__init__(f"RPC Error {code}: {message}")


class SolanaRPC:
    """
    Async Solana JSON-RPC client.

    Provides the read calls needed to verify inbound payments and the write
    calls needed to submit and confirm payouts.
    """

    def __init__(self, config: SolanaRPCConfig, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config
        self._request_id = 0
        self._client = httpx.AsyncClient(timeout=config.timeout, transport=transport)

    async def _call(self, method: str, params: list[Any] | None = None) -> Any:
        """Make RPC call."""
        self._request_id += 1
        payload = {
            "jsonrpc": "2.0",
            "id": self._request_id,
            "method": method,
            "params": params or [],
        }

        response = await self._client.post(self.config.url, json=payload)
        response.raise_for_status()
        try:
            result = response.json()
        except ValueError as e:
            raise SolanaRPCError(-32700, f"Malformed response to {method}") from e
        if not isinstance(result, dict):
            raise SolanaRPCError(-32700, f"Malformed response to {method}")

        if result.get("error"):
            error = result["error"]
            raise SolanaRPCError(
                error.get("code", -1),
                error.get("message", "Unknown error"),
                error.get("data"),
            )

        return result.get("result")

    async def close(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()

    async def check_connectivity(self) -> bool:
        """Check if the RPC node is reachable and healthy."""
        try:
            return await self._call("getHealth") == "ok"
        except Exception:
            return False

    # Reads

    async def get_signatures_for_address(
        self,
        address: str,
        limit: int = 10,
        before: Optional[str] = None,
        until: Optional[str] = None,
        commitment: Optional[str] = None,
    ) -> list[dict[str, Any]]:
        """
        Get confirmed signatures involving an address, newest first.

        `before` starts the search below that signature (pagination cursor),
        `until` stops before reaching that signature (watermark).
        """
        options: dict[str, Any] = {
            "limit": limit,
            "commitment": commitment or self.config.commitment,
        }
        if before:
            options["before"] = before
        if until:
            options["until"] = until
        return await self._call("getSignaturesForAddress", [address, options])

    async def get_transaction(self, signature: str, commitment: Optional[str] = None) -> dict[str, Any] | None:
        """Get a transaction in jsonParsed encoding, or None if unknown."""
        return await self._call(
            "getTransaction",
            [
                signature,
                {
                    "encoding": "jsonParsed",
                    "commitment": commitment or self.config.commitment,
                    "maxSupportedTransactionVersion": 0,
                },
            ],
        )

    async def get_latest_blockhash(self, commitment: Optional[str] = None) -> str:
        """Get a recent blockhash for signing a new transaction."""
        result = await self._call(
            "getLatestBlockhash",
            [{"commitment": commitment or self.config.commitment}],
        )
        return result["value"]["blockhash"]

    async def get_balance(self, address: str, commitment: Optional[str] = None) -> int:
        """Get account balance in lamports."""
        result = await self._call(
            "getBalance",
            [address, {"commitment": commitment or self.config.commitment}],
        )
        return int(result["value"])

    async def get_account_info(self, address: str, commitment: Optional[str] = None) -> dict[str, Any] | None:
        """Get account info, or None if the account does not exist."""
        result = await self._call(
            "getAccountInfo",
            [address, {"encoding": "base64", "commitment": commitment or self.config.commitment}],
        )
        return result["value"]

    async def get_token_account_balance(self, address: str, commitment: Optional[str] = None) -> int:
        """Get SPL token account balance in base units."""
        result = await self._call(
            "getTokenAccountBalance",
            [address, {"commitment": commitment or self.config.commitment}],
        )
        return int(result["value"]["amount"])

    async def get_signature_statuses(self, signatures: list[str]) -> list[dict[str, Any] | None]:
        """Get statuses of recently submitted signatures (None for unknown)."""
        result = await self._call(
            "getSignatureStatuses",
            [signatures, {"searchTransactionHistory": False}],
        )
        return result["value"]

    # Writes

    async def send_transaction(self, raw_tx: bytes, preflight_commitment: Optional[str] = None) -> str:
        """Submit a signed, serialized transaction. Returns its signature."""
        return await self._call(
            "sendTransaction",
            [
                base64.b64encode(raw_tx).decode("ascii"),
                {
                    "encoding": "base64",
                    "preflightCommitment": preflight_commitment or self.config.commitment,
                },
            ],
        )
