"""
Package validation — a single all-or-nothing verdict for a package.

Per-transaction states:
    CONFIRMED             carries a proof whose root the chain tracker accepts
    JUSTIFIED_BY_PARENTS  no proof, every parent is in the package and valid
                          and every spent output exists and is spent once
    REJECTED              anything else; the whole package is rejected

Transactions are walked in topological order, so parents are always
settled before their children. Proof checks are independent of each
other and may run concurrently (validate_async, or max_workers > 1).

OracleUnreachable is reported separately from ProofInvalid: the first
means "try again later", the second "this package is not valid".
"""

from __future__ import annotations

import asyncio
import enum
import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping, Union

from beef.chaintracker import ChainTracker
from beef.errors import (
    CycleError,
    MalformedProof,
    MissingParent,
    OracleUnreachable,
    ProofInvalid,
)
from beef.merkle import MerklePathVerifier, MerkleProof
from beef.package import Package
from beef.tx import Transaction, TxOutput

logger = logging.getLogger(__name__)


class TxState(enum.Enum):
    CONFIRMED = "confirmed"
    JUSTIFIED_BY_PARENTS = "justified_by_parents"
    REJECTED = "rejected"


class FailureReason(enum.Enum):
    PROOF_INVALID = "proof_invalid"
    MISSING_PARENT = "missing_parent"
    CYCLE_DETECTED = "cycle_detected"
    ORACLE_UNREACHABLE = "oracle_unreachable"


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of validating one package.

    Attributes:
        valid: True only if every transaction is confirmed or justified.
        transactions: Ordered, fully justified transactions (empty on failure).
        failed_txid: First transaction, in topological order, that failed.
        reason: Why it failed.
        detail: Human-readable explanation.
        states: Terminal state of each transaction reached before stopping.
    """

    valid: bool
    transactions: tuple[Transaction, ...] = ()
    failed_txid: bytes | None = None
    reason: FailureReason | None = None
    detail: str = ""
    states: Mapping[bytes, TxState] = field(default_factory=dict)

    def __bool__(self) -> bool:
        return self.valid

    @property
    def retryable(self) -> bool:
        return self.reason is FailureReason.ORACLE_UNREACHABLE

    @property
    def failed_txid_hex(self) -> str | None:
        return self.failed_txid[::-1].hex() if self.failed_txid else None

    def raise_for_failure(self) -> None:
        """Raise the exception matching ``reason``. No-op for a valid result."""
        if self.valid:
            return
        if self.reason is FailureReason.PROOF_INVALID:
            raise ProofInvalid(self.failed_txid, self.detail)
        if self.reason is FailureReason.MISSING_PARENT:
            raise MissingParent(self.failed_txid, self.detail)
        if self.reason is FailureReason.CYCLE_DETECTED:
            raise CycleError(self.failed_txid, self.detail)
        raise OracleUnreachable(self.detail)

    def unspent_outputs(self) -> list[tuple[bytes, int, TxOutput]]:
        """Outputs created in the package and not spent inside it.

        Returned as (txid, index, output) in package order.
        """
        spent = {txin.outpoint for tx in self.transactions for txin in tx.inputs}
        return [
            (tx.txid, index, out)
            for tx in self.transactions
            for index, out in enumerate(tx.outputs)
            if (tx.txid, index) not in spent
        ]


def _failure(
    txid: bytes | None,
    reason: FailureReason,
    detail: str,
    states: dict[bytes, TxState],
) -> ValidationResult:
    if txid is not None:
        states[txid] = TxState.REJECTED
    return ValidationResult(
        valid=False,
        failed_txid=txid,
        reason=reason,
        detail=detail,
        states=MappingProxyType(states),
    )


# A proof check ends as True, False, or an exception to report
_ProofOutcome = Union[bool, BaseException]


class Validator:
    """Validates packages against a chain tracker.

    Args:
        allow_single_tx_block: accept empty Merkle paths (root == txid).
        timeout: seconds allowed per tracker call; None waits indefinitely.
        max_workers: proof checks run in parallel when greater than 1.
    """

    def __init__(
        self,
        allow_single_tx_block: bool = False,
        timeout: float | None = None,
        max_workers: int = 1,
    ) -> None:
        self.verifier = MerklePathVerifier(allow_single_tx_block)
        self.timeout = timeout
        self.max_workers = max(1, max_workers)

    # -- proof checks ----------------------------------------------------------

    def _check_proof(self, proof: MerkleProof, tracker: ChainTracker) -> _ProofOutcome:
        try:
            return self.verifier.verify(proof, tracker)
        except (MalformedProof, OracleUnreachable) as e:
            return e

    def _check_proofs(
        self, proofs: list[MerkleProof], tracker: ChainTracker,
    ) -> dict[bytes, _ProofOutcome]:
        if self.max_workers == 1 and self.timeout is None:
            return {p.subject_txid: self._check_proof(p, tracker) for p in proofs}

        outcomes: dict[bytes, _ProofOutcome] = {}
        pool = ThreadPoolExecutor(max_workers=self.max_workers)
        try:
            futures = {p.subject_txid: pool.submit(self._check_proof, p, tracker) for p in proofs}
            for txid, future in futures.items():
                try:
                    outcomes[txid] = future.result(timeout=self.timeout)
                except FutureTimeout:
                    outcomes[txid] = OracleUnreachable(
                        f"Chain tracker did not answer within {self.timeout}s"
                    )
        finally:
            # A hung tracker call must not block the verdict
            pool.shutdown(wait=False, cancel_futures=True)
        return outcomes

    async def _check_proofs_async(
        self, proofs: list[MerkleProof], tracker: ChainTracker,
    ) -> dict[bytes, _ProofOutcome]:
        async def one(proof: MerkleProof) -> _ProofOutcome:
            try:
                return await asyncio.wait_for(
                    asyncio.to_thread(self._check_proof, proof, tracker),
                    timeout=self.timeout,
                )
            except asyncio.TimeoutError:
                return OracleUnreachable(
                    f"Chain tracker did not answer within {self.timeout}s"
                )

        results = await asyncio.gather(*(one(p) for p in proofs))
        return {p.subject_txid: r for p, r in zip(proofs, results)}

    # -- verdict -----------------------------------------------------------------

    def _order(self, package: Package) -> list[Transaction] | ValidationResult:
        try:
            return package.order()
        except CycleError as e:
            logger.warning("Package rejected: %s", e)
            return _failure(e.txid, FailureReason.CYCLE_DETECTED, str(e), {})

    def _settle(
        self,
        ordered: list[Transaction],
        package: Package,
        outcomes: dict[bytes, _ProofOutcome],
    ) -> ValidationResult:
        states: dict[bytes, TxState] = {}
        # Outputs already consumed: proven spends first, then in walk order
        claimed = {
            txin.outpoint: tx.txid
            for tx in ordered if package.is_proven(tx.txid)
            for txin in tx.inputs
        }
        for tx in ordered:
            outcome = outcomes.get(tx.txid)
            if package.is_proven(tx.txid):
                if isinstance(outcome, OracleUnreachable):
                    result = _failure(
                        tx.txid, FailureReason.ORACLE_UNREACHABLE, str(outcome), states,
                    )
                    logger.warning(
                        "Validation incomplete at %s: %s", tx.txid_hex, outcome,
                    )
                    return result
                if outcome is not True:
                    detail = (
                        str(outcome) if isinstance(outcome, BaseException)
                        else f"Merkle root for {tx.txid_hex} not accepted by chain tracker"
                    )
                    logger.warning("Package rejected: %s", detail)
                    return _failure(tx.txid, FailureReason.PROOF_INVALID, detail, states)
                states[tx.txid] = TxState.CONFIRMED
                continue

            if not tx.inputs:
                detail = f"Unproven transaction {tx.txid_hex} has no inputs"
                logger.warning("Package rejected: %s", detail)
                return _failure(tx.txid, FailureReason.MISSING_PARENT, detail, states)

            for txin in tx.inputs:
                parent = package.get(txin.prev_txid)
                outpoint = f"{txin.prev_txid[::-1].hex()}:{txin.prev_index}"
                if parent is None or states.get(parent.txid) in (None, TxState.REJECTED):
                    detail = (
                        f"{tx.txid_hex} spends {txin.prev_txid[::-1].hex()}, "
                        "which is not in the package"
                    )
                elif txin.prev_index >= len(parent.outputs):
                    detail = (
                        f"{tx.txid_hex} spends {outpoint}, but {parent.txid_hex} "
                        f"has {len(parent.outputs)} outputs"
                    )
                elif txin.outpoint in claimed:
                    detail = (
                        f"{tx.txid_hex} spends {outpoint}, already spent by "
                        f"{claimed[txin.outpoint][::-1].hex()}"
                    )
                else:
                    claimed[txin.outpoint] = tx.txid
                    continue
                logger.warning("Package rejected: %s", detail)
                return _failure(tx.txid, FailureReason.MISSING_PARENT, detail, states)
            states[tx.txid] = TxState.JUSTIFIED_BY_PARENTS

        logger.info(
            "Package valid: %d transactions, %d confirmed by proof",
            len(ordered), len(package.proofs),
        )
        return ValidationResult(
            valid=True,
            transactions=tuple(ordered),
            states=MappingProxyType(states),
        )

    def validate(self, package: Package, tracker: ChainTracker) -> ValidationResult:
        """Validate a package. Never returns a partial acceptance."""
        ordered = self._order(package)
        if isinstance(ordered, ValidationResult):
            return ordered
        outcomes = self._check_proofs(list(package.proofs.values()), tracker)
        return self._settle(ordered, package, outcomes)

    async def validate_async(
        self, package: Package, tracker: ChainTracker,
    ) -> ValidationResult:
        """Like validate(), with proof checks run concurrently off the event loop."""
        ordered = self._order(package)
        if isinstance(ordered, ValidationResult):
            return ordered
        outcomes = await self._check_proofs_async(list(package.proofs.values()), tracker)
        return self._settle(ordered, package, outcomes)


def validate(package: Package, tracker: ChainTracker, **options) -> ValidationResult:
    """Validate with a one-off Validator. Options are Validator's arguments."""
    return Validator(**options).validate(package, tracker)
