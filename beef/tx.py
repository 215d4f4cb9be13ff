"""
Transaction model and the default Bitcoin transaction decoder.

The package engine only needs a transaction's id, the outpoints its inputs
spend, and its outputs. Scripts, signatures and witnesses are carried
opaquely; nothing here executes or checks them.

Ids are kept in internal byte order (the raw sha256d output, the order
used inside serialized inputs and Merkle trees). ``txid_hex`` gives the
conventional reversed display form.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Protocol

from beef import DIGEST_SIZE, MAX_TX_IO, MAX_TX_SIZE
from beef._format.wire import ByteReader, ByteWriter
from beef.errors import ParseError
from beef.merkle import sha256d

_SEGWIT_MARKER = 0x00
_SEGWIT_FLAG = 0x01
_DEFAULT_SEQUENCE = 0xFFFFFFFF


@dataclass(frozen=True)
class TxInput:
    """Reference to a previous output plus the opaque unlocking data."""

    prev_txid: bytes
    prev_index: int
    script_sig: bytes = b""
    sequence: int = _DEFAULT_SEQUENCE

    def __post_init__(self) -> None:
        if len(self.prev_txid) != DIGEST_SIZE:
            raise ValueError(
                f"prev_txid must be {DIGEST_SIZE} bytes, got {len(self.prev_txid)}"
            )

    @property
    def outpoint(self) -> tuple[bytes, int]:
        return self.prev_txid, self.prev_index


@dataclass(frozen=True)
class TxOutput:
    amount: int
    locking_script: bytes = b""


@dataclass(frozen=True)
class Transaction:
    """An immutable parsed transaction.

    Attributes:
        txid: 32-byte id in internal byte order.
        inputs: Outpoints spent, in serialization order.
        outputs: Created outputs, referenced as (txid, index).
        raw: Exact serialized bytes the transaction was parsed from.
    """

    txid: bytes
    inputs: tuple[TxInput, ...]
    outputs: tuple[TxOutput, ...]
    raw: bytes = field(repr=False)
    version: int = 1
    locktime: int = 0

    def __post_init__(self) -> None:
        if len(self.txid) != DIGEST_SIZE:
            raise ValueError(f"txid must be {DIGEST_SIZE} bytes, got {len(self.txid)}")

    @property
    def txid_hex(self) -> str:
        return self.txid[::-1].hex()

    @property
    def parent_txids(self) -> tuple[bytes, ...]:
        """Distinct parent ids, in first-seen input order."""
        return tuple(dict.fromkeys(i.prev_txid for i in self.inputs))

    @classmethod
    def create(
        cls,
        inputs: Iterable[TxInput | tuple[bytes, int]],
        outputs: Iterable[TxOutput | tuple[int, bytes]],
        version: int = 1,
        locktime: int = 0,
    ) -> Transaction:
        """Serialize a legacy (non-witness) transaction and derive its id."""
        ins = tuple(i if isinstance(i, TxInput) else TxInput(i[0], i[1]) for i in inputs)
        outs = tuple(o if isinstance(o, TxOutput) else TxOutput(o[0], o[1]) for o in outputs)
        raw = _serialize(version, ins, outs, locktime)
        return cls(
            txid=sha256d(raw), inputs=ins, outputs=outs, raw=raw,
            version=version, locktime=locktime,
        )


class TransactionDecoder(Protocol):
    """Anything that turns raw bytes into a Transaction."""

    def parse(self, raw: bytes) -> Transaction: ...


def _serialize(
    version: int,
    inputs: tuple[TxInput, ...],
    outputs: tuple[TxOutput, ...],
    locktime: int,
) -> bytes:
    w = ByteWriter()
    w.write_u32(version)
    w.write_varint(len(inputs))
    for txin in inputs:
        w.write(txin.prev_txid)
        w.write_u32(txin.prev_index)
        w.write_var_bytes(txin.script_sig)
        w.write_u32(txin.sequence)
    w.write_varint(len(outputs))
    for txout in outputs:
        w.write_u64(txout.amount)
        w.write_var_bytes(txout.locking_script)
    w.write_u32(locktime)
    return w.getvalue()


class BitcoinTxDecoder:
    """Parser for Bitcoin's transaction serialization (legacy and segwit).

    The id is sha256d of the non-witness serialization, so a segwit
    transaction gets the same id it has on chain.
    """

    def __init__(self, max_size: int = MAX_TX_SIZE, max_io: int = MAX_TX_IO) -> None:
        self.max_size = max_size
        self.max_io = max_io

    def parse(self, raw: bytes) -> Transaction:
        if len(raw) > self.max_size:
            raise ParseError(
                f"Transaction size {len(raw)} exceeds maximum {self.max_size} bytes"
            )
        r = ByteReader(raw, error=ParseError)
        version = r.read_u32()

        segwit = False
        if r.remaining >= 2 and raw[4] == _SEGWIT_MARKER:
            if raw[5] != _SEGWIT_FLAG:
                raise ParseError(f"Unknown segwit flag 0x{raw[5]:02x}")
            r.read(2)
            segwit = True

        # Outpoint (36) + empty script (1) + sequence (4)
        n_in = r.read_count(self.max_io, "input", min_item_size=41)
        inputs = []
        for _ in range(n_in):
            prev_txid = r.read(DIGEST_SIZE)
            prev_index = r.read_u32()
            script_sig = r.read_var_bytes(self.max_size, "script_sig")
            sequence = r.read_u32()
            inputs.append(TxInput(prev_txid, prev_index, script_sig, sequence))
        if segwit and not inputs:
            raise ParseError("Segwit transaction has no inputs")

        n_out = r.read_count(self.max_io, "output", min_item_size=9)
        outputs = []
        for _ in range(n_out):
            amount = r.read_u64()
            script = r.read_var_bytes(self.max_size, "locking_script")
            outputs.append(TxOutput(amount, script))

        if segwit:
            for _ in inputs:
                n_items = r.read_count(self.max_size, "witness item")
                for _ in range(n_items):
                    r.read_var_bytes(self.max_size, "witness item")

        locktime = r.read_u32()
        if not r.at_end():
            raise ParseError(f"{r.remaining} trailing bytes after transaction")

        ins, outs = tuple(inputs), tuple(outputs)
        stripped = _serialize(version, ins, outs, locktime) if segwit else raw
        return Transaction(
            txid=sha256d(stripped), inputs=ins, outputs=outs, raw=bytes(raw),
            version=version, locktime=locktime,
        )
