import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Mapping, Optional, Protocol

import httpx

from ..chains import Chain, NATIVE_DECIMALS, USDC_ADDRESSES, USDC_DECIMALS, is_evm, is_valid_address
from ..errors import AddressInvalid, OracleError, TransportError

logger = logging.getLogger(__name__)

# ERC-20 balanceOf(address)
BALANCE_OF_SELECTOR = "0x70a08231"


@dataclass(frozen=True)
class OracleBalances:
    stable_balance: Decimal
    native_balance: Decimal


class BalanceOracle(Protocol):
    name: str

    async def get_balances(self, address: str, chain: Chain) -> OracleBalances:
        ...


def scale(raw: int, decimals: int) -> Decimal:
    return Decimal(raw).scaleb(-decimals)


class RpcBalanceOracle:
    """
    Reads USDC and native balances from EVM JSON-RPC endpoints.

    One endpoint per chain; chains without a configured endpoint (and Solana)
    are reported as ``OracleError``.
    """

    name = "rpc"

    def __init__(self, rpc_urls: Mapping[Chain, str], timeout: float = 10.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.rpc_urls: Dict[Chain, str] = dict(rpc_urls)
        self.timeout = timeout
        self._transport = transport

    async def get_balances(self, address: str, chain: Chain) -> OracleBalances:
        if not is_valid_address(address, chain):
            raise AddressInvalid(f"Invalid address format for {chain.value}")
        if not is_evm(chain):
            raise OracleError(f"Balance lookup not supported for {chain.value}")
        url = self.rpc_urls.get(chain)
        if not url:
            raise OracleError(f"RPC endpoint not configured for chain: {chain.value}")

        call = {
            "to": USDC_ADDRESSES[chain],
            "data": BALANCE_OF_SELECTOR + address[2:].lower().rjust(64, "0"),
        }
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            stable_raw = await self._rpc(client, url, "eth_call", [call, "latest"])
            native_raw = await self._rpc(client, url, "eth_getBalance", [address, "latest"])

        balances = OracleBalances(
            stable_balance=scale(stable_raw, USDC_DECIMALS[chain]),
            native_balance=scale(native_raw, NATIVE_DECIMALS[chain]),
        )
        logger.debug("Balances for %s on %s: %s", address, chain.value, balances)
        return balances

    async def _rpc(self, client: httpx.AsyncClient, url: str, method: str, params: list) -> int:
        payload = {"jsonrpc": "2.0", "id": 1, "method": method, "params": params}
        try:
            resp = await client.post(url, json=payload)
            resp.raise_for_status()
            body = resp.json()
        except httpx.HTTPError as e:
            raise TransportError(f"RPC {method} failed: {e}") from e
        except ValueError as e:
            raise TransportError(f"RPC {method} returned invalid JSON") from e

        if not isinstance(body, dict):
            raise OracleError(f"RPC {method} returned malformed response")
        error = body.get("error")
        if error:
            message = error.get("message", "unknown error") if isinstance(error, dict) else str(error)
            raise OracleError(f"RPC {method} error: {message}")
        result = body.get("result")
        if result in (None, "0x"):
            return 0
        try:
            return int(result, 16)
        except (TypeError, ValueError) as e:
            raise OracleError(f"RPC {method} returned malformed result") from e
