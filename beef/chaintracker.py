"""
Chain trackers — the trust boundary that confirms Merkle roots.

A tracker answers one question: is ``root`` the Merkle root of the block
at ``height`` on the best chain? It returns False for "no" and raises
OracleUnreachable when it cannot tell. Trackers are passed explicitly to
the validator; there is no process-wide default.

Implementations:
    StaticChainTracker   in-memory table (tests, pinned checkpoints)
    CachingChainTracker  memoizes another tracker's answers
    RPCChainTracker      asks a Bitcoin Core node over JSON-RPC
"""

from __future__ import annotations

import hmac
import json
import logging
import os
import socket
import threading
import urllib.error
import urllib.request
from base64 import b64encode
from typing import Any, Mapping, Protocol, runtime_checkable

from beef import DIGEST_SIZE
from beef.errors import OracleUnreachable

logger = logging.getLogger(__name__)

DEFAULT_RPC_TIMEOUT = 30.0

# Bitcoin Core RPC error codes that mean "no such block", not "try again"
_RPC_INVALID_PARAMETER = -8
_RPC_INVALID_ADDRESS_OR_KEY = -5


@runtime_checkable
class ChainTracker(Protocol):
    def is_valid_root_for_height(self, root: bytes, height: int) -> bool: ...


class StaticChainTracker:
    """Tracker backed by a fixed height -> root table.

    Roots are given in internal byte order (as computed from a proof).
    """

    def __init__(self, roots: Mapping[int, bytes] | None = None) -> None:
        self._roots: dict[int, bytes] = dict(roots or {})

    def add_root(self, height: int, root: bytes) -> None:
        if len(root) != DIGEST_SIZE:
            raise ValueError(f"root must be {DIGEST_SIZE} bytes, got {len(root)}")
        self._roots[height] = root

    def is_valid_root_for_height(self, root: bytes, height: int) -> bool:
        expected = self._roots.get(height)
        if expected is None:
            return False
        return hmac.compare_digest(expected, root)


class CachingChainTracker:
    """Memoizes (root, height) answers of another tracker.

    Answers are final for a fixed chain, so both True and False are
    cached. OracleUnreachable is never cached. Thread-safe.
    """

    def __init__(self, inner: ChainTracker, max_entries: int = 10_000) -> None:
        self._inner = inner
        self._max_entries = max_entries
        self._cache: dict[tuple[bytes, int], bool] = {}
        self._lock = threading.Lock()

    def is_valid_root_for_height(self, root: bytes, height: int) -> bool:
        key = (bytes(root), height)
        with self._lock:
            if key in self._cache:
                return self._cache[key]

        answer = bool(self._inner.is_valid_root_for_height(root, height))

        with self._lock:
            if len(self._cache) >= self._max_entries:
                # Drop the oldest entry (dicts keep insertion order)
                self._cache.pop(next(iter(self._cache)))
            self._cache[key] = answer
        return answer

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._cache)


class BitcoinRPCError(Exception):
    """Error returned by or while reaching a Bitcoin JSON-RPC endpoint.

    ``code`` is the RPC error code for node-level errors and None for
    transport failures.
    """

    def __init__(self, message: str, code: int | None = None) -> None:
        self.code = code
        super().__init__(message)


class BitcoinRPC:
    """Minimal Bitcoin JSON-RPC client using stdlib urllib.

    Usage:
        rpc = BitcoinRPC.from_env()
        height = rpc.call("getblockcount")
    """

    def __init__(
        self,
        url: str,
        user: str = "",
        password: str = "",
        timeout: float = DEFAULT_RPC_TIMEOUT,
    ) -> None:
        if not url:
            raise ValueError("Bitcoin RPC URL cannot be empty")
        self.url = url
        self.timeout = timeout
        self._user = user
        self._password = password
        self._id_counter = 0
        self._lock = threading.Lock()

    @classmethod
    def from_env(cls) -> BitcoinRPC:
        """Create an RPC client from environment variables.

        Reads:
            BITCOIN_RPC_URL     — e.g. http://127.0.0.1:8332
            BITCOIN_RPC_USER    — RPC username
            BITCOIN_RPC_PASS    — RPC password
            BITCOIN_RPC_TIMEOUT — seconds per call (default 30)
        """
        url = os.environ.get("BITCOIN_RPC_URL", "")
        if not url:
            raise BitcoinRPCError(
                "BITCOIN_RPC_URL not set. "
                "Set it to your Bitcoin node's RPC endpoint "
                "(e.g. http://127.0.0.1:8332)."
            )
        raw_timeout = os.environ.get("BITCOIN_RPC_TIMEOUT", "")
        try:
            timeout = float(raw_timeout) if raw_timeout else DEFAULT_RPC_TIMEOUT
        except ValueError:
            raise BitcoinRPCError(f"Invalid BITCOIN_RPC_TIMEOUT: {raw_timeout!r}")
        return cls(
            url,
            os.environ.get("BITCOIN_RPC_USER", ""),
            os.environ.get("BITCOIN_RPC_PASS", ""),
            timeout=timeout,
        )

    def call(self, method: str, *params: Any) -> Any:
        """Execute a JSON-RPC call. Returns the 'result' field.

        Raises BitcoinRPCError on transport or RPC-level errors.
        """
        with self._lock:
            self._id_counter += 1
            request_id = self._id_counter
        payload = json.dumps({
            "jsonrpc": "1.0",
            "id": request_id,
            "method": method,
            "params": list(params),
        }).encode()

        req = urllib.request.Request(
            self.url,
            data=payload,
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        if self._user or self._password:
            creds = b64encode(f"{self._user}:{self._password}".encode()).decode()
            req.add_header("Authorization", f"Basic {creds}")

        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as resp:
                body = json.loads(resp.read().decode())
        except urllib.error.HTTPError as e:
            # Bitcoin Core returns errors as HTTP 500 with JSON body
            try:
                body = json.loads(e.read().decode())
            except (ValueError, OSError):
                raise BitcoinRPCError(f"HTTP {e.code}: {e.reason}") from e
        except urllib.error.URLError as e:
            raise BitcoinRPCError(f"Connection failed: {e.reason}") from e
        except (socket.timeout, TimeoutError) as e:
            raise BitcoinRPCError(f"Timed out after {self.timeout}s") from e
        except (OSError, ValueError) as e:
            raise BitcoinRPCError(f"RPC call failed: {e}") from e

        if not isinstance(body, dict):
            raise BitcoinRPCError(f"Unexpected RPC response: {type(body).__name__}")
        if body.get("error"):
            err = body["error"]
            if isinstance(err, dict):
                raise BitcoinRPCError(
                    f"RPC error: {err.get('message', err)}", code=err.get("code")
                )
            raise BitcoinRPCError(f"RPC error: {err}")

        return body.get("result")


class RPCChainTracker:
    """Tracker that reads block headers from a Bitcoin Core node.

    For each query: getblockhash(height), then getblockheader(hash) and a
    constant-time comparison of the header's merkleroot.
    """

    def __init__(self, rpc: BitcoinRPC) -> None:
        self.rpc = rpc

    @classmethod
    def from_env(cls) -> RPCChainTracker:
        return cls(BitcoinRPC.from_env())

    def is_valid_root_for_height(self, root: bytes, height: int) -> bool:
        try:
            block_hash = self.rpc.call("getblockhash", height)
            header = self.rpc.call("getblockheader", block_hash, True)
        except BitcoinRPCError as e:
            if e.code in (_RPC_INVALID_PARAMETER, _RPC_INVALID_ADDRESS_OR_KEY):
                logger.info("No block at height %d: %s", height, e)
                return False
            logger.warning("Chain tracker unreachable at height %d: %s", height, e)
            raise OracleUnreachable(str(e)) from e

        merkleroot = header.get("merkleroot") if isinstance(header, dict) else None
        if not isinstance(merkleroot, str) or not merkleroot.isascii():
            raise OracleUnreachable(f"Unexpected getblockheader response for height {height}")

        # RPC reports the root in display (reversed) byte order
        return hmac.compare_digest(merkleroot.lower(), root[::-1].hex())
