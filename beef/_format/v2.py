"""
V2 layout — de-duplicated encoding.

Proof subjects are indexes into the transaction table, sibling hashes are
indexes into a shared hash table (first-use order), and proofs are grouped
by block height so each height is written once. Blocks that contribute
several transactions share most of their upper path, which the hash table
collapses.
"""

from __future__ import annotations

from itertools import groupby
from typing import TYPE_CHECKING, Sequence

from beef import DIGEST_SIZE, MAX_MERKLE_DEPTH
from beef._format.spec import DecodeLimits, FormatVersion
from beef._format.v1 import make_proof, read_transactions, write_transactions
from beef._format.wire import ByteReader, ByteWriter
from beef.errors import DecodeError
from beef.merkle import MerkleProof, PathNode

if TYPE_CHECKING:
    from beef.tx import Transaction, TransactionDecoder


class V2Codec:
    version = FormatVersion.V2

    def write(
        self,
        w: ByteWriter,
        transactions: Sequence[Transaction],
        proofs: Sequence[MerkleProof],
    ) -> None:
        write_transactions(w, transactions)

        tx_index = {tx.txid: i for i, tx in enumerate(transactions)}
        by_height = sorted(proofs, key=lambda p: (p.block_height, tx_index[p.subject_txid]))

        hash_index: dict[bytes, int] = {}
        for proof in by_height:
            for node in proof.path:
                hash_index.setdefault(node.sibling, len(hash_index))

        w.write_varint(len(hash_index))
        for digest in hash_index:
            w.write(digest)

        groups = [
            (height, list(group))
            for height, group in groupby(by_height, key=lambda p: p.block_height)
        ]
        w.write_varint(len(groups))
        for height, group in groups:
            w.write_varint(height)
            w.write_varint(len(group))
            for proof in group:
                w.write_varint(tx_index[proof.subject_txid])
                w.write_varint(proof.depth)
                for node in proof.path:
                    w.write_varint(hash_index[node.sibling] << 1 | int(node.sibling_on_right))

    def read(
        self,
        r: ByteReader,
        decoder: TransactionDecoder,
        limits: DecodeLimits,
    ) -> tuple[list[Transaction], list[MerkleProof]]:
        transactions = read_transactions(r, decoder, limits)

        n_hashes = r.read_count(limits.max_hashes, "hash", min_item_size=DIGEST_SIZE)
        hashes = [r.read(DIGEST_SIZE) for _ in range(n_hashes)]
        if len(set(hashes)) != len(hashes):
            raise DecodeError("Duplicate entry in hash table")

        proofs: list[MerkleProof] = []
        last_height = -1
        next_hash = 0  # table entries must appear in first-use order
        n_groups = r.read_count(limits.max_proofs, "proof group", min_item_size=2)
        for _ in range(n_groups):
            height = r.read_varint()
            if height <= last_height:
                raise DecodeError(
                    f"Proof groups out of order: height {height} after {last_height}"
                )
            last_height = height
            n_proofs = r.read_count(
                limits.max_proofs - len(proofs), "proof", min_item_size=2
            )
            if n_proofs == 0:
                raise DecodeError(f"Empty proof group at height {height}")
            last_idx = -1
            for _ in range(n_proofs):
                idx = r.read_varint()
                if idx >= len(transactions):
                    raise DecodeError(
                        f"Transaction index {idx} out of range [0, {len(transactions)})"
                    )
                if idx <= last_idx:
                    raise DecodeError(
                        f"Proofs out of order at height {height}: "
                        f"transaction index {idx} after {last_idx}"
                    )
                last_idx = idx
                depth = r.read_count(MAX_MERKLE_DEPTH, "path node")
                path = []
                for _ in range(depth):
                    ref = r.read_varint()
                    h_idx, on_right = ref >> 1, bool(ref & 1)
                    if h_idx >= len(hashes):
                        raise DecodeError(
                            f"Hash index {h_idx} out of range [0, {len(hashes)})"
                        )
                    if h_idx > next_hash:
                        raise DecodeError(
                            f"Hash index {h_idx} used before hash index {next_hash}"
                        )
                    if h_idx == next_hash:
                        next_hash += 1
                    path.append(PathNode(hashes[h_idx], on_right))
                proofs.append(make_proof(transactions[idx].txid, height, path))
        if next_hash != len(hashes):
            raise DecodeError(f"{len(hashes) - next_hash} unused hash table entries")
        return transactions, proofs
