"""JSON-RPC ledger reader for EVM (account-family) chains."""

from collections.abc import Callable, Iterable
from itertools import count

import httpx

from chainpay.chains.base import NO_LOG_INDEX, Block, LedgerReaderError, MalformedBlockError, Transfer
from chainpay.common.logging import logger


# keccak256("Transfer(address,address,uint256)")
TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"


def _hex_to_int(value) -> int:
    if not isinstance(value, str) or not value.startswith("0x"):
        raise MalformedBlockError(f"expected hex quantity, got {value!r}")
    return int(value, 16)


def _topic_address(topic: str) -> str:
    # Indexed address topics are left-padded to 32 bytes.
    if not isinstance(topic, str) or len(topic) != 66:
        raise MalformedBlockError(f"malformed address topic {topic!r}")
    return "0x" + topic[-40:]


class EvmLedgerReader:
    """Reads native and ERC-20 transfers from an Ethereum-compatible node."""

    def __init__(
        self,
        rpc_url: str,
        token_contracts: Callable[[], Iterable[str]],
        timeout_seconds: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.rpc_url = rpc_url
        self.token_contracts = token_contracts
        self.client = client or httpx.AsyncClient(timeout=timeout_seconds)
        self._ids = count(1)

    async def _call(self, method: str, params: list):
        request = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        try:
            resp = await self.client.post(self.rpc_url, json=request)
            resp.raise_for_status()
            body = resp.json()
        except httpx.HTTPError as exc:
            raise LedgerReaderError(f"{method} failed: {exc}") from exc
        except ValueError as exc:
            raise MalformedBlockError(f"{method} returned invalid JSON: {exc}") from exc
        if body.get("error"):
            raise LedgerReaderError(f"{method} rpc error: {body['error']}")
        return body.get("result")

    async def current_height(self) -> int:
        return _hex_to_int(await self._call("eth_blockNumber", []))

    async def block_at(self, height: int) -> Block:
        raw = await self._call("eth_getBlockByNumber", [hex(height), True])
        if raw is None:
            # Node has not caught up with the height it reported as tip.
            raise LedgerReaderError(f"block {height} not found")
        try:
            block_hash = raw["hash"]
            parent_hash = raw["parentHash"]
            number = _hex_to_int(raw["number"])
            transactions = raw["transactions"]
        except KeyError as exc:
            raise MalformedBlockError(f"block {height} missing field {exc}") from exc
        if number != height:
            raise MalformedBlockError(f"asked for block {height}, node returned {number}")

        transfers = [transfer for tx in transactions if (transfer := self._native_transfer(tx)) is not None]
        transfers.extend(await self._token_transfers(block_hash))
        return Block(number=number, hash=block_hash, parent_hash=parent_hash, transfers=tuple(transfers))

    def _native_transfer(self, tx: dict) -> Transfer | None:
        if not isinstance(tx, dict):
            raise MalformedBlockError("block transactions were not returned in full")
        to_address = tx.get("to")
        value = _hex_to_int(tx.get("value", "0x0"))
        # Contract creations have no recipient.
        if not to_address or value == 0:
            return None
        try:
            return Transfer(
                tx_hash=tx["hash"],
                from_address=tx["from"],
                to_address=to_address,
                amount_raw=value,
                log_index=NO_LOG_INDEX,
                contract=None,
            )
        except KeyError as exc:
            raise MalformedBlockError(f"transaction missing field {exc}") from exc

    async def _token_transfers(self, block_hash: str) -> list[Transfer]:
        contracts = list(self.token_contracts())
        if not contracts:
            return []
        logs = await self._call(
            "eth_getLogs",
            [{"blockHash": block_hash, "address": contracts, "topics": [TRANSFER_TOPIC]}],
        )
        transfers = []
        for log in logs or []:
            topics = log.get("topics") or []
            # ERC-721 Transfer shares the signature but indexes the token id.
            if len(topics) != 3:
                continue
            if log.get("removed"):
                logger.warning("skipping removed log tx_hash=%s", log.get("transactionHash"))
                continue
            try:
                transfer = Transfer(
                    tx_hash=log["transactionHash"],
                    from_address=_topic_address(topics[1]),
                    to_address=_topic_address(topics[2]),
                    amount_raw=_hex_to_int(log.get("data") or "0x0"),
                    log_index=_hex_to_int(log["logIndex"]),
                    contract=log["address"],
                )
            except KeyError as exc:
                raise MalformedBlockError(f"transfer log in block {block_hash} missing field {exc}") from exc
            transfers.append(transfer)
        return transfers

    async def transaction_block(self, tx_hash: str) -> int | None:
        receipt = await self._call("eth_getTransactionReceipt", [tx_hash])
        if not receipt or receipt.get("blockNumber") is None:
            return None
        # Reverted transactions moved no value.
        if receipt.get("status") == "0x0":
            return None
        return _hex_to_int(receipt["blockNumber"])

    async def close(self) -> None:
        await self.client.aclose()
