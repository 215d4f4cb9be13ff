"""
Package — an immutable bundle of transactions and their Merkle proofs.

A transaction with a proof is claimed to be mined; one without must be
justified by parents inside the same package. Construction checks
structure only (unique ids, proofs tied to member transactions). Whether
the claims hold is the Validator's job.
"""

from __future__ import annotations

from types import MappingProxyType
from typing import Iterable, Iterator, Mapping

from beef import graph
from beef._format import DEFAULT_VERSION, DecodeLimits, FormatVersion
from beef._format import decode as _decode
from beef._format import encode as _encode
from beef.errors import DecodeError, DuplicateIdConflict, MalformedProof, OrphanProof
from beef.merkle import MerkleProof
from beef.tx import Transaction, TransactionDecoder


class Package:
    """A BEEF package.

    Usage:
        pkg = Package.decode(data)
        for tx in pkg.order():
            ...
        data = pkg.encode(FormatVersion.V1)
    """

    __slots__ = ("_transactions", "_by_id", "_proofs", "_version")

    def __init__(
        self,
        transactions: Iterable[Transaction],
        proofs: Mapping[bytes, MerkleProof] | Iterable[MerkleProof] = (),
        version: FormatVersion = DEFAULT_VERSION,
    ) -> None:
        by_id: dict[bytes, Transaction] = {}
        for tx in transactions:
            existing = by_id.get(tx.txid)
            if existing is not None and existing != tx:
                raise DuplicateIdConflict(tx.txid)
            by_id[tx.txid] = tx

        if isinstance(proofs, Mapping):
            for key, proof in proofs.items():
                if key != proof.subject_txid:
                    raise MalformedProof(
                        f"Proof for {proof.subject_hex} filed under {key[::-1].hex()}"
                    )
            proofs = proofs.values()
        by_subject: dict[bytes, MerkleProof] = {}
        for proof in proofs:
            if proof.subject_txid not in by_id:
                raise OrphanProof(proof.subject_txid)
            existing_proof = by_subject.get(proof.subject_txid)
            if existing_proof is not None and existing_proof != proof:
                raise DuplicateIdConflict(
                    proof.subject_txid,
                    f"Conflicting Merkle proofs for {proof.subject_hex}",
                )
            by_subject[proof.subject_txid] = proof

        self._transactions = tuple(by_id.values())
        self._by_id = by_id
        self._proofs = MappingProxyType(by_subject)
        self._version = version

    # -- codec ---------------------------------------------------------------

    @classmethod
    def decode(
        cls,
        data: bytes,
        decoder: TransactionDecoder | None = None,
        limits: DecodeLimits | None = None,
    ) -> Package:
        return _decode(data, decoder=decoder, limits=limits)

    @classmethod
    def from_hex(cls, hex_str: str, **kwargs) -> Package:
        try:
            data = bytes.fromhex(hex_str.strip())
        except ValueError as e:
            raise DecodeError(f"Invalid hex: {e}") from e
        return cls.decode(data, **kwargs)

    def encode(self, version: FormatVersion | None = None) -> bytes:
        return _encode(self, version)

    def to_hex(self, version: FormatVersion | None = None) -> str:
        return self.encode(version).hex()

    # -- accessors -------------------------------------------------------------

    @property
    def version(self) -> FormatVersion:
        return self._version

    @property
    def transactions(self) -> tuple[Transaction, ...]:
        """Member transactions in insertion order. Use order() for dependencies."""
        return self._transactions

    @property
    def proofs(self) -> Mapping[bytes, MerkleProof]:
        return self._proofs

    @property
    def txids(self) -> frozenset[bytes]:
        return frozenset(self._by_id)

    def get(self, txid: bytes) -> Transaction | None:
        return self._by_id.get(txid)

    def proof_for(self, txid: bytes) -> MerkleProof | None:
        return self._proofs.get(txid)

    def is_proven(self, txid: bytes) -> bool:
        return txid in self._proofs

    def order(self) -> list[Transaction]:
        """Topological order, parents first, ties by ascending txid."""
        return graph.order(self._transactions)

    def with_version(self, version: FormatVersion) -> Package:
        return Package(self._transactions, self._proofs, version=version)

    def ancestry(self, txid: bytes) -> Package:
        """Minimal sub-package that carries ``txid`` and what justifies it.

        Walks parents inside the package, stopping at transactions that
        carry a proof.
        """
        keep = graph.ancestors(txid, self._transactions, stop_at=self._proofs.keys())
        return Package(
            [tx for tx in self._transactions if tx.txid in keep],
            {k: v for k, v in self._proofs.items() if k in keep},
            version=self._version,
        )

    # -- dunder ----------------------------------------------------------------

    def __len__(self) -> int:
        return len(self._transactions)

    def __iter__(self) -> Iterator[Transaction]:
        return iter(self._transactions)

    def __contains__(self, txid: object) -> bool:
        return txid in self._by_id

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Package):
            return NotImplemented
        return (
            set(self._transactions) == set(other._transactions)
            and dict(self._proofs) == dict(other._proofs)
        )

    def __hash__(self) -> int:
        return hash((frozenset(self._transactions), frozenset(self._proofs.items())))

    def __repr__(self) -> str:
        return (
            f"Package(version={self._version.name}, transactions={len(self._transactions)}, "
            f"proofs={len(self._proofs)})"
        )
