"""
Merkle inclusion proofs for transactions in a block.

Bitcoin convention:
    Leaf:          the transaction id (internal byte order), not re-hashed
    Internal node: sha256d(left || right)
    Odd level:     the last node is paired with itself

A proof is the list of siblings from the leaf up to the root, each tagged
with the side it sits on. The computed root means nothing by itself: it
must be confirmed by a ChainTracker for the proof's block height.

Single-transaction blocks have an empty path (root == txid). Accepting
that is an explicit opt-in (``allow_single_tx_block=True``); by default an
empty path is a MalformedProof.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Sequence

from beef import DIGEST_SIZE, MAX_MERKLE_DEPTH
from beef.errors import MalformedProof, OracleUnreachable

if TYPE_CHECKING:
    from beef.chaintracker import ChainTracker

logger = logging.getLogger(__name__)


def sha256d(data: bytes) -> bytes:
    """Bitcoin's double SHA-256."""
    return hashlib.sha256(hashlib.sha256(data).digest()).digest()


@dataclass(frozen=True)
class PathNode:
    sibling: bytes
    sibling_on_right: bool


@dataclass(frozen=True)
class MerkleProof:
    """Inclusion proof for one transaction.

    Attributes:
        subject_txid: Transaction the proof attests to (internal byte order).
        block_height: Height of the block that committed the transaction.
        path: Siblings from leaf to root.
    """

    subject_txid: bytes
    block_height: int
    path: tuple[PathNode, ...] = ()

    def __post_init__(self) -> None:
        if len(self.subject_txid) != DIGEST_SIZE:
            raise MalformedProof(
                f"subject txid must be {DIGEST_SIZE} bytes, got {len(self.subject_txid)}"
            )
        if self.block_height < 0:
            raise MalformedProof(f"block height must be non-negative, got {self.block_height}")
        if len(self.path) > MAX_MERKLE_DEPTH:
            raise MalformedProof(
                f"path depth {len(self.path)} exceeds maximum {MAX_MERKLE_DEPTH}"
            )
        # Accept lists/tuples of pairs for convenience, normalise to PathNode
        nodes = tuple(
            n if isinstance(n, PathNode) else PathNode(bytes(n[0]), bool(n[1]))
            for n in self.path
        )
        for depth, node in enumerate(nodes):
            if len(node.sibling) != DIGEST_SIZE:
                raise MalformedProof(
                    f"sibling at depth {depth} is {len(node.sibling)} bytes, "
                    f"expected {DIGEST_SIZE}"
                )
        object.__setattr__(self, "path", nodes)

    @property
    def subject_hex(self) -> str:
        return self.subject_txid[::-1].hex()

    @property
    def depth(self) -> int:
        return len(self.path)


def compute_root(proof: MerkleProof, allow_single_tx_block: bool = False) -> bytes:
    """Walk the path from the subject to the implied Merkle root."""
    if not proof.path and not allow_single_tx_block:
        raise MalformedProof(
            f"Empty Merkle path for {proof.subject_hex} "
            "(single-transaction blocks are disabled)"
        )

    current = proof.subject_txid
    for node in proof.path:
        if node.sibling_on_right:
            current = sha256d(current + node.sibling)
        else:
            current = sha256d(node.sibling + current)
    return current


def verify(
    proof: MerkleProof,
    tracker: ChainTracker,
    allow_single_tx_block: bool = False,
) -> bool:
    """Check a proof's root against the chain tracker.

    Returns False when the tracker does not recognise the root at the
    proof's height. Raises OracleUnreachable when the tracker cannot answer
    and MalformedProof when no root can be computed.
    """
    root = compute_root(proof, allow_single_tx_block)
    try:
        ok = bool(tracker.is_valid_root_for_height(root, proof.block_height))
    except OracleUnreachable:
        raise
    except (OSError, TimeoutError) as e:
        raise OracleUnreachable(f"Chain tracker failed: {e}") from e

    if not ok:
        logger.debug(
            "Root %s not recognised at height %d for %s",
            root[::-1].hex(), proof.block_height, proof.subject_hex,
        )
    return ok


class MerklePathVerifier:
    """Proof verifier with the single-transaction-block policy bound in."""

    def __init__(self, allow_single_tx_block: bool = False) -> None:
        self.allow_single_tx_block = allow_single_tx_block

    def compute_root(self, proof: MerkleProof) -> bytes:
        return compute_root(proof, self.allow_single_tx_block)

    def verify(self, proof: MerkleProof, tracker: ChainTracker) -> bool:
        return verify(proof, tracker, self.allow_single_tx_block)


class MerkleTree:
    """Bitcoin block Merkle tree built from the block's transaction ids.

    Usage:
        tree = MerkleTree.from_txids([coinbase_id, tx1_id, tx2_id])
        proof = tree.get_proof(1, block_height=100)
        assert compute_root(proof) == tree.root
    """

    def __init__(self, layers: list[list[bytes]]) -> None:
        self._layers = layers

    @classmethod
    def from_txids(cls, txids: Sequence[bytes]) -> MerkleTree:
        """Build the tree.

        Raises:
            ValueError: If txids is empty or an id is not 32 bytes.
        """
        if not txids:
            raise ValueError("Cannot build Merkle tree from empty txid list")
        for txid in txids:
            if len(txid) != DIGEST_SIZE:
                raise ValueError(f"txid must be {DIGEST_SIZE} bytes, got {len(txid)}")

        layer = list(txids)
        layers = [layer]
        while len(layer) > 1:
            if len(layer) % 2 == 1:
                layer = layer + [layer[-1]]
            layer = [sha256d(layer[i] + layer[i + 1]) for i in range(0, len(layer), 2)]
            layers.append(layer)
        return cls(layers)

    @property
    def root(self) -> bytes:
        return self._layers[-1][0]

    @property
    def leaf_count(self) -> int:
        return len(self._layers[0])

    def get_proof(self, index: int, block_height: int) -> MerkleProof:
        """Inclusion proof for the transaction at ``index`` in the block.

        Raises:
            IndexError: If index is out of range.
        """
        leaves = self._layers[0]
        if index < 0 or index >= len(leaves):
            raise IndexError(f"Leaf index {index} out of range [0, {len(leaves)})")

        path = []
        idx = index
        for layer in self._layers[:-1]:
            padded = layer + [layer[-1]] if len(layer) % 2 == 1 else layer
            if idx % 2 == 0:
                path.append(PathNode(padded[idx + 1], True))
            else:
                path.append(PathNode(padded[idx - 1], False))
            idx //= 2

        return MerkleProof(leaves[index], block_height, tuple(path))


def compute_merkle_root(txids: Sequence[bytes]) -> bytes:
    """Merkle root of a block given its transaction ids in block order."""
    return MerkleTree.from_txids(txids).root
