"""
V1 layout — flat transaction list followed by self-describing proofs.

Each proof carries its subject txid and full sibling hashes, so V1 can be
read without cross-references. See spec.py for the byte layout.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Sequence

from beef import DIGEST_SIZE, MAX_MERKLE_DEPTH
from beef._format.spec import (
    SIBLING_LEFT,
    SIBLING_RIGHT,
    DecodeLimits,
    FormatVersion,
)
from beef._format.wire import ByteReader, ByteWriter
from beef.errors import DecodeError, MalformedProof, ParseError
from beef.merkle import MerkleProof, PathNode

if TYPE_CHECKING:
    from beef.tx import Transaction, TransactionDecoder


def write_transactions(w: ByteWriter, transactions: Sequence[Transaction]) -> None:
    w.write_varint(len(transactions))
    for tx in transactions:
        w.write_var_bytes(tx.raw)


def read_transactions(
    r: ByteReader,
    decoder: TransactionDecoder,
    limits: DecodeLimits,
) -> list[Transaction]:
    """Read the transaction table shared by both layouts."""
    count = r.read_count(limits.max_transactions, "transaction")
    transactions: list[Transaction] = []
    seen: set[bytes] = set()
    for i in range(count):
        raw = r.read_var_bytes(limits.max_tx_size, "transaction")
        try:
            tx = decoder.parse(raw)
        except ParseError as e:
            raise DecodeError(f"Transaction {i} could not be parsed: {e}") from e
        if tx.txid in seen:
            raise DecodeError(f"Transaction {tx.txid_hex} appears more than once")
        seen.add(tx.txid)
        transactions.append(tx)
    return transactions


def make_proof(subject: bytes, height: int, path: list[PathNode]) -> MerkleProof:
    try:
        return MerkleProof(subject, height, tuple(path))
    except MalformedProof as e:
        raise DecodeError(f"Malformed proof: {e}") from e


class V1Codec:
    version = FormatVersion.V1

    def write(
        self,
        w: ByteWriter,
        transactions: Sequence[Transaction],
        proofs: Sequence[MerkleProof],
    ) -> None:
        write_transactions(w, transactions)
        w.write_varint(len(proofs))
        for proof in proofs:
            w.write(proof.subject_txid)
            w.write_varint(proof.block_height)
            w.write_varint(proof.depth)
            for node in proof.path:
                w.write_u8(SIBLING_RIGHT if node.sibling_on_right else SIBLING_LEFT)
                w.write(node.sibling)

    def read(
        self,
        r: ByteReader,
        decoder: TransactionDecoder,
        limits: DecodeLimits,
    ) -> tuple[list[Transaction], list[MerkleProof]]:
        transactions = read_transactions(r, decoder, limits)

        # txid + height + depth
        count = r.read_count(limits.max_proofs, "proof", min_item_size=DIGEST_SIZE + 2)
        proofs = []
        for _ in range(count):
            subject = r.read(DIGEST_SIZE)
            height = r.read_varint()
            depth = r.read_count(MAX_MERKLE_DEPTH, "path node", min_item_size=DIGEST_SIZE + 1)
            path = []
            for _ in range(depth):
                flag = r.read_u8()
                if flag not in (SIBLING_LEFT, SIBLING_RIGHT):
                    raise DecodeError(f"Unknown path node flag 0x{flag:02x}")
                path.append(PathNode(r.read(DIGEST_SIZE), flag == SIBLING_RIGHT))
            proofs.append(make_proof(subject, height, path))
        return transactions, proofs
