"""Builders for transaction chains and mined blocks used across the tests."""

from __future__ import annotations

import hashlib
import itertools

from beef.chaintracker import StaticChainTracker
from beef.merkle import MerkleProof, MerkleTree
from beef.tx import Transaction

_nonce = itertools.count(1)


def external_outpoint(label: str) -> tuple[bytes, int]:
    """An outpoint outside any package (stands in for an older mined tx)."""
    return hashlib.sha256(label.encode()).digest(), 0


def make_tx(*parents, outputs: int = 1, amount: int = 1000) -> Transaction:
    """Build a unique transaction spending output 0 of each parent.

    Parents may be Transactions or (txid, index) outpoints. With no
    parents the transaction spends a fresh external outpoint.
    """
    nonce = next(_nonce)
    inputs = [(p.txid, 0) if isinstance(p, Transaction) else p for p in parents]
    if not inputs:
        inputs = [external_outpoint(f"external-{nonce}")]
    return Transaction.create(
        inputs, [(amount, b"\x51")] * outputs, locktime=nonce,
    )


def mine(
    tracker: StaticChainTracker,
    txs: list[Transaction],
    height: int,
    filler: int = 3,
) -> list[MerkleProof]:
    """Put txs in a block after ``filler`` unrelated ids, register the root."""
    ids = [hashlib.sha256(b"filler-%d-%d" % (height, i)).digest() for i in range(filler)]
    ids += [tx.txid for tx in txs]
    tree = MerkleTree.from_txids(ids)
    tracker.add_root(height, tree.root)
    return [tree.get_proof(filler + i, height) for i in range(len(txs))]
