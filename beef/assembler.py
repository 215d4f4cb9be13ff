"""
PackageAssembler — producer-side builder for packages.

Transactions and proofs can be added in any order; build() checks that
every proof belongs to an added transaction and that the dependency graph
is acyclic, then hands ownership to an immutable Package. The assembler
cannot be used after build().
"""

from __future__ import annotations

import logging

from beef import graph
from beef._format import DEFAULT_VERSION, FormatVersion
from beef.errors import AssemblerClosed, DuplicateIdConflict, OrphanProof
from beef.merkle import MerkleProof
from beef.package import Package
from beef.tx import BitcoinTxDecoder, Transaction, TransactionDecoder

logger = logging.getLogger(__name__)


class PackageAssembler:
    """Incremental builder.

    Usage:
        asm = PackageAssembler()
        asm.add_transaction(parent)
        asm.add_merkle_proof(tree.get_proof(3, block_height=100))
        asm.add_transaction(child)
        data = asm.build().encode()
    """

    def __init__(
        self,
        version: FormatVersion = DEFAULT_VERSION,
        decoder: TransactionDecoder | None = None,
    ) -> None:
        self.version = version
        self._decoder = decoder or BitcoinTxDecoder()
        self._transactions: dict[bytes, Transaction] = {}
        self._proofs: dict[bytes, MerkleProof] = {}
        self._closed = False

    @classmethod
    def from_package(cls, package: Package) -> PackageAssembler:
        """Start a new builder seeded with an existing package's contents."""
        asm = cls(version=package.version)
        asm.add_package(package)
        return asm

    def _check_open(self) -> None:
        if self._closed:
            raise AssemblerClosed("build() already called on this assembler")

    def add_transaction(self, tx: Transaction) -> PackageAssembler:
        """Add a transaction. Re-adding the same transaction is a no-op.

        Raises:
            DuplicateIdConflict: a different transaction has the same id.
        """
        self._check_open()
        existing = self._transactions.get(tx.txid)
        if existing is not None:
            if existing != tx:
                raise DuplicateIdConflict(tx.txid)
            return self
        self._transactions[tx.txid] = tx
        return self

    def add_raw_transaction(self, raw: bytes) -> Transaction:
        """Parse and add a serialized transaction. Returns the parsed object."""
        tx = self._decoder.parse(raw)
        self.add_transaction(tx)
        return tx

    def add_merkle_proof(self, proof: MerkleProof) -> PackageAssembler:
        """Attach a proof. The subject transaction may be added before or after.

        Raises:
            DuplicateIdConflict: a different proof is already attached.
        """
        self._check_open()
        existing = self._proofs.get(proof.subject_txid)
        if existing is not None:
            if existing != proof:
                raise DuplicateIdConflict(
                    proof.subject_txid,
                    f"Conflicting Merkle proofs for {proof.subject_hex}",
                )
            return self
        self._proofs[proof.subject_txid] = proof
        return self

    def add_package(self, package: Package) -> PackageAssembler:
        """Merge every transaction and proof of another package."""
        for tx in package.transactions:
            self.add_transaction(tx)
        for proof in package.proofs.values():
            self.add_merkle_proof(proof)
        return self

    def __len__(self) -> int:
        return len(self._transactions)

    def __contains__(self, txid: object) -> bool:
        return txid in self._transactions

    def build(self) -> Package:
        """Freeze the accumulated contents into a Package.

        Raises:
            OrphanProof: a proof's subject was never added.
            CycleError: the transactions depend on each other in a loop.
        """
        self._check_open()
        for txid in self._proofs:
            if txid not in self._transactions:
                raise OrphanProof(txid)

        ordered = graph.order(self._transactions.values())
        self._closed = True

        package = Package(ordered, self._proofs, version=self.version)
        self._transactions = {}
        self._proofs = {}
        logger.debug(
            "Built %s package: %d transactions, %d proofs",
            self.version.name, len(package), len(package.proofs),
        )
        return package
