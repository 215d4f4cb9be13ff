"""
Package wire format — versions, magic markers and decode limits.

Layout (both versions start with a 4-byte little-endian magic):

    V1  01 00 BE EF
        varint n_tx      { varint len, raw tx }            topological order
        varint n_proofs  { txid(32), varint height,
                           varint depth, { flag u8, hash(32) } }
        flag: 0x00 sibling on the left, 0x01 sibling on the right

    V2  02 00 BE EF
        varint n_tx      { varint len, raw tx }            topological order
        varint n_hashes  { hash(32) }                       shared sibling table
        varint n_groups  { varint height, varint n,        ascending height
                           { varint tx_index, varint depth,
                             { varint (hash_index << 1 | on_right) } } }

V2 never repeats a 32-byte value: subjects point into the transaction
table and siblings into the hash table, and proofs from the same block
share one height field.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol, Sequence

from beef import (
    BEEF_V1_MAGIC,
    BEEF_V2_MAGIC,
    MAX_HASHES,
    MAX_PROOFS,
    MAX_TRANSACTIONS,
    MAX_TX_SIZE,
)
from beef._format.wire import ByteReader, ByteWriter
from beef.merkle import MerkleProof

if TYPE_CHECKING:
    from beef.tx import Transaction, TransactionDecoder

MAGIC_SIZE = 4

SIBLING_LEFT = 0x00
SIBLING_RIGHT = 0x01


class FormatVersion(enum.Enum):
    V1 = BEEF_V1_MAGIC
    V2 = BEEF_V2_MAGIC

    @property
    def magic(self) -> int:
        return self.value


DEFAULT_VERSION = FormatVersion.V2


@dataclass(frozen=True)
class DecodeLimits:
    """Ceilings applied while decoding untrusted bytes."""

    max_transactions: int = MAX_TRANSACTIONS
    max_proofs: int = MAX_PROOFS
    max_hashes: int = MAX_HASHES
    max_tx_size: int = MAX_TX_SIZE


class LayoutCodec(Protocol):
    """Version-specific body encoder/decoder (everything after the magic)."""

    version: FormatVersion

    def write(
        self,
        w: ByteWriter,
        transactions: Sequence[Transaction],
        proofs: Sequence[MerkleProof],
    ) -> None: ...

    def read(
        self,
        r: ByteReader,
        decoder: TransactionDecoder,
        limits: DecodeLimits,
    ) -> tuple[list[Transaction], list[MerkleProof]]: ...
