"""JSON-RPC chain client used for log fetches, block lookups and liveness probes."""

from __future__ import annotations

from datetime import datetime
import itertools
import json
import logging
import threading
from typing import Any, Callable, Mapping, Optional, Protocol, Sequence
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from ledger_sync.common import parse_hex_quantity, to_hex_quantity, utc_from_epoch
from ledger_sync.errors import TransportError

logger = logging.getLogger(__name__)

EMPTY_CODE = "0x"

TopicFilter = Sequence[str | Sequence[str] | None]


class ChainClient(Protocol):
    """Chain read surface consumed by the ingestor and the liveness probe."""

    def block_number(self) -> int:
        """Return the current head block number."""

    def get_logs(
        self,
        *,
        address: str,
        from_block: int,
        to_block: int,
        topics: TopicFilter,
    ) -> Sequence[Mapping[str, Any]]:
        """Return raw log objects in [from_block, to_block]."""

    def get_block_timestamp(self, block_number: int) -> datetime:
        """Return the UTC timestamp of a block."""

    def get_code(self, address: str) -> str | None:
        """Return deployed bytecode at the latest block, or None when absent."""


class JsonRpcChainClient:
    """Plain HTTP JSON-RPC 2.0 client with single-shot calls."""

    def __init__(
        self,
        *,
        rpc_url: str,
        timeout_seconds: float = 20.0,
        requester: Optional[Callable[[str, list[Any]], Any]] = None,
    ) -> None:
        self._rpc_url = rpc_url
        self._timeout_seconds = timeout_seconds
        self._requester = requester
        self._ids = itertools.count(1)
        self._call_count = 0
        self._count_lock = threading.Lock()

    @property
    def rpc_url(self) -> str:
        return self._rpc_url

    @property
    def call_count(self) -> int:
        """Return number of RPC calls issued by this client."""
        return self._call_count

    def _post(self, method: str, params: list[Any]) -> Any:
        body = json.dumps(
            {"jsonrpc": "2.0", "method": method, "params": params, "id": next(self._ids)}
        ).encode("utf-8")
        request = Request(
            url=self._rpc_url,
            data=body,
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        try:
            with urlopen(request, timeout=self._timeout_seconds) as response:
                payload = response.read().decode("utf-8")
        except (HTTPError, URLError, TimeoutError, OSError) as exc:
            raise TransportError(f"RPC request {method} failed", details=str(exc)) from exc
        try:
            return json.loads(payload)
        except ValueError as exc:
            raise TransportError(f"RPC response for {method} is not JSON", details=payload[:200]) from exc

    def _call(self, method: str, params: list[Any]) -> Any:
        with self._count_lock:
            self._call_count += 1
        logger.debug("RPC %s %s", method, params)
        if self._requester is not None:
            envelope = self._requester(method, params)
        else:
            envelope = self._post(method, params)
        if not isinstance(envelope, Mapping):
            raise TransportError(f"RPC response for {method} is not an object", details=envelope)
        if envelope.get("error") is not None:
            raise TransportError(f"RPC error from {method}", details=envelope["error"])
        return envelope.get("result")

    def block_number(self) -> int:
        result = self._call("eth_blockNumber", [])
        try:
            return parse_hex_quantity(result)
        except ValueError as exc:
            raise TransportError("Malformed eth_blockNumber result", details=result) from exc

    def get_logs(
        self,
        *,
        address: str,
        from_block: int,
        to_block: int,
        topics: TopicFilter,
    ) -> Sequence[Mapping[str, Any]]:
        result = self._call(
            "eth_getLogs",
            [
                {
                    "address": address,
                    "fromBlock": to_hex_quantity(from_block),
                    "toBlock": to_hex_quantity(to_block),
                    "topics": [list(topic) if isinstance(topic, (list, tuple)) else topic for topic in topics],
                }
            ],
        )
        if result is None:
            return ()
        if not isinstance(result, list):
            raise TransportError("Malformed eth_getLogs result", details=result)
        return result

    def get_block_timestamp(self, block_number: int) -> datetime:
        block = self._call("eth_getBlockByNumber", [to_hex_quantity(block_number), False])
        if not isinstance(block, Mapping):
            raise TransportError(f"Block {block_number} not found", details=block)
        try:
            return utc_from_epoch(parse_hex_quantity(block.get("timestamp")))
        except ValueError as exc:
            raise TransportError(f"Malformed timestamp for block {block_number}", details=block.get("timestamp")) from exc

    def get_code(self, address: str) -> str | None:
        result = self._call("eth_getCode", [address, "latest"])
        if result is None:
            return None
        if not isinstance(result, str):
            raise TransportError("Malformed eth_getCode result", details=result)
        return result
