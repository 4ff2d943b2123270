#!/usr/bin/env python3
"""
Transaction signers.

``SignerProvider`` is what the executor talks to. ``LocalKeySigner`` holds a
raw private key in memory, signs legacy transactions with eth-account and
broadcasts them over plain JSON-RPC.
"""

from __future__ import annotations

import abc
import itertools
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import aiohttp
from eth_account import Account
from eth_utils import to_checksum_address

from env_utils import env_str
from logging_utils import get_logger
from networks import chain_id, parse_evm_network, rpc_endpoint

GAS_LIMIT_BUFFER = 1.2
RPC_TIMEOUT_SECONDS = 20.0


class SignerUnavailableError(RuntimeError):
    """No usable signer credentials for a live worker."""


class RpcError(RuntimeError):
    """JSON-RPC reply carried an error or no result."""


@dataclass
class SendResult:
    tx_hash: str
    from_address: str

    def to_dict(self) -> Dict[str, str]:
        return {"txHash": self.tx_hash, "from": self.from_address}


class SignerProvider(abc.ABC):
    id: str = ""

    @abc.abstractmethod
    async def get_address(self, network: str) -> str:
        raise NotImplementedError

    @abc.abstractmethod
    async def sign_and_send(self, network: str, to: str, data: str, value: str = "0") -> SendResult:
        """Sign and broadcast one transaction, return once it is accepted by the node."""
        raise NotImplementedError


def _to_int(value: Any) -> int:
    if isinstance(value, int):
        return value
    text = str(value or "0").strip()
    return int(text, 16) if text.lower().startswith("0x") else int(text)


class LocalKeySigner(SignerProvider):
    id = "local-key"

    def __init__(
        self,
        private_key: str,
        *,
        rpc_url: Optional[str] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        key = str(private_key or "").strip()
        if key and not key.startswith("0x"):
            key = "0x" + key
        try:
            self._account = Account.from_key(key)
        except Exception as exc:
            raise SignerUnavailableError(f"Invalid private key: {exc}") from exc
        self._rpc_url = rpc_url
        self._session = session
        self._ids = itertools.count(1)
        self.log = get_logger("signers")

    @property
    def address(self) -> str:
        return self._account.address

    async def get_address(self, network: str) -> str:
        return self._account.address

    async def _rpc(self, network: str, method: str, params: List[Any]) -> Any:
        url = rpc_endpoint(network, self._rpc_url)
        body = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        if self._session is not None:
            return self._unwrap(method, await self._post(self._session, url, body))
        timeout = aiohttp.ClientTimeout(total=RPC_TIMEOUT_SECONDS)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            return self._unwrap(method, await self._post(session, url, body))

    @staticmethod
    async def _post(session: aiohttp.ClientSession, url: str, body: Dict[str, Any]) -> Dict[str, Any]:
        async with session.post(url, json=body) as resp:
            if resp.status >= 400:
                text = await resp.text()
                raise RpcError(f"{body['method']} HTTP {resp.status}: {text[:200]}")
            return await resp.json(content_type=None)

    @staticmethod
    def _unwrap(method: str, reply: Dict[str, Any]) -> Any:
        if not isinstance(reply, dict):
            raise RpcError(f"{method}: malformed reply")
        err = reply.get("error")
        if err:
            msg = err.get("message") if isinstance(err, dict) else str(err)
            raise RpcError(f"{method}: {msg}")
        if "result" not in reply:
            raise RpcError(f"{method}: missing result")
        return reply["result"]

    async def sign_and_send(self, network: str, to: str, data: str, value: str = "0") -> SendResult:
        net = parse_evm_network(network)
        sender = self._account.address
        tx_value = _to_int(value)
        call = {"from": sender, "to": to, "data": data, "value": hex(tx_value)}

        nonce = _to_int(await self._rpc(net, "eth_getTransactionCount", [sender, "pending"]))
        gas_price = _to_int(await self._rpc(net, "eth_gasPrice", []))
        gas_estimate = _to_int(await self._rpc(net, "eth_estimateGas", [call]))

        tx = {
            "to": to_checksum_address(to),
            "data": data,
            "value": tx_value,
            "nonce": nonce,
            "gas": int(gas_estimate * GAS_LIMIT_BUFFER),
            "gasPrice": gas_price,
            "chainId": chain_id(net),
        }
        signed = self._account.sign_transaction(tx)
        raw = "0x" + bytes(signed.raw_transaction).hex()
        tx_hash = await self._rpc(net, "eth_sendRawTransaction", [raw])
        self.log.info(f"Sent tx {tx_hash} on {net} from {sender} (nonce={nonce}, gas={tx['gas']})")
        return SendResult(tx_hash=str(tx_hash), from_address=sender)


def resolve_signer(
    network: str,
    from_private_key: Optional[str] = None,
    *,
    rpc_url: Optional[str] = None,
) -> SignerProvider:
    """Explicit key, then ``EVM_PRIVATE_KEY``; raise when neither is set."""
    parse_evm_network(network)
    key = str(from_private_key or "").strip() or env_str("EVM_PRIVATE_KEY")
    if not key:
        raise SignerUnavailableError(
            "No signer configured: pass fromPrivateKey or set EVM_PRIVATE_KEY"
        )
    return LocalKeySigner(key, rpc_url=rpc_url)
