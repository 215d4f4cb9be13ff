"""
Tests for package validation — verdicts, atomicity, oracle failures.

All trackers are in-memory; no Bitcoin node required.
"""

from __future__ import annotations

import logging
import threading
from unittest.mock import MagicMock

import pytest

from beef.assembler import PackageAssembler
from beef.chaintracker import StaticChainTracker
from beef.errors import (
    CycleError,
    MissingParent,
    OracleUnreachable,
    ProofInvalid,
)
from beef.merkle import MerkleProof
from beef.package import Package
from beef.tx import Transaction, TxInput, TxOutput
from beef.validator import FailureReason, TxState, ValidationResult, Validator, validate

from helpers import external_outpoint, make_tx, mine


class SlowTracker:
    """Blocks until released, then accepts every root."""

    def __init__(self) -> None:
        self.release = threading.Event()

    def is_valid_root_for_height(self, root: bytes, height: int) -> bool:
        self.release.wait(5)
        return True


def build(*txs, proofs=()):
    asm = PackageAssembler()
    for tx in txs:
        asm.add_transaction(tx)
    for proof in proofs:
        asm.add_merkle_proof(proof)
    return asm.build()


# ---------------------------------------------------------------------------
# TestScenarios
# ---------------------------------------------------------------------------

class TestScenarios:

    def test_proven_parent_and_child(self, tracker, chain):
        t1, t2, proof = chain
        result = Validator().validate(build(t2, t1, proofs=[proof]), tracker)
        assert result.valid
        assert bool(result)
        assert list(result.transactions) == [t1, t2]
        assert result.states == {
            t1.txid: TxState.CONFIRMED,
            t2.txid: TxState.JUSTIFIED_BY_PARENTS,
        }
        assert result.failed_txid is None
        assert result.reason is None

    def test_missing_parent_names_child(self, tracker):
        t3 = make_tx()
        t2 = make_tx(t3)
        result = Validator().validate(build(t2), tracker)
        assert not result.valid
        assert result.reason is FailureReason.MISSING_PARENT
        assert result.failed_txid == t2.txid
        assert result.failed_txid_hex == t2.txid_hex
        assert result.transactions == ()

    def test_proof_alone_is_sufficient(self, tracker):
        # Parents of a mined transaction need not be in the package
        t1 = make_tx(external_outpoint("far-away-ancestor"))
        (proof,) = mine(tracker, [t1], 300)
        result = Validator().validate(build(t1, proofs=[proof]), tracker)
        assert result.valid
        assert result.states[t1.txid] is TxState.CONFIRMED

    def test_deep_chain(self, tracker):
        root = make_tx()
        (proof,) = mine(tracker, [root], 10)
        txs = [root]
        for _ in range(20):
            txs.append(make_tx(txs[-1]))
        result = validate(build(*reversed(txs), proofs=[proof]), tracker)
        assert result.valid
        assert list(result.transactions) == txs


# ---------------------------------------------------------------------------
# TestAtomicity
# ---------------------------------------------------------------------------

class TestAtomicity:

    def test_one_bad_proof_rejects_everything(self, tracker, chain):
        t1, t2, proof = chain
        t4 = make_tx()
        (p4,) = mine(StaticChainTracker(), [t4], 200)  # root never registered
        result = Validator().validate(build(t1, t2, t4, proofs=[proof, p4]), tracker)
        assert not result.valid
        assert result.reason is FailureReason.PROOF_INVALID
        assert result.failed_txid == t4.txid
        assert result.transactions == ()

    def test_wrong_height(self, tracker, chain):
        t1, t2, proof = chain
        moved = MerkleProof(t1.txid, proof.block_height + 1, proof.path)
        result = Validator().validate(build(t1, t2, proofs=[moved]), tracker)
        assert result.reason is FailureReason.PROOF_INVALID
        assert result.failed_txid == t1.txid

    def test_child_of_rejected_never_justified(self, tracker, chain):
        t1, t2, _ = chain
        bogus = MerkleProof(t1.txid, 100, [(b"\x00" * 32, True)])
        result = Validator().validate(build(t1, t2, proofs=[bogus]), tracker)
        assert not result.valid
        assert result.states[t1.txid] is TxState.REJECTED
        assert t2.txid not in result.states

    def test_first_failure_in_topological_order(self, tracker, chain):
        t1, t2, proof = chain
        orphan = make_tx(external_outpoint("missing"))
        pkg = build(t1, t2, orphan, proofs=[proof])
        first_bad = next(tx for tx in pkg.order() if tx.txid == orphan.txid)
        result = Validator().validate(pkg, tracker)
        assert result.failed_txid == first_bad.txid
        assert result.reason is FailureReason.MISSING_PARENT

    def test_unproven_without_inputs(self, tracker):
        lonely = Transaction(b"\x42" * 32, (), (TxOutput(5),), raw=b"")
        result = Validator().validate(Package([lonely]), tracker)
        assert result.reason is FailureReason.MISSING_PARENT
        assert "no inputs" in result.detail

    def test_spends_output_parent_does_not_have(self, tracker, chain):
        t1, _, proof = chain
        bad = make_tx((t1.txid, 7))
        result = Validator().validate(build(t1, bad, proofs=[proof]), tracker)
        assert not result.valid
        assert result.reason is FailureReason.MISSING_PARENT
        assert result.failed_txid == bad.txid
        assert f"{t1.txid_hex}:7" in result.detail
        assert result.transactions == ()

    def test_last_output_index_is_spendable(self, tracker):
        root = make_tx(outputs=3)
        (proof,) = mine(tracker, [root], 20)
        child = make_tx((root.txid, 2))
        assert Validator().validate(build(root, child, proofs=[proof]), tracker).valid

    def test_double_spend_inside_package(self, tracker, chain):
        t1, t2, proof = chain
        rival = make_tx(t1)  # also spends t1:0
        result = Validator().validate(build(t1, t2, rival, proofs=[proof]), tracker)
        assert not result.valid
        assert result.reason is FailureReason.MISSING_PARENT
        loser = max(t2.txid, rival.txid)
        assert result.failed_txid == loser
        assert "already spent" in result.detail

    def test_unproven_spend_conflicts_with_proven_spend(self, tracker, chain):
        t1, _, proof = chain
        mined_child = make_tx(t1)
        (child_proof,) = mine(tracker, [mined_child], 101)
        rival = make_tx(t1)
        result = Validator().validate(
            build(t1, mined_child, rival, proofs=[proof, child_proof]), tracker,
        )
        assert result.failed_txid == rival.txid
        assert mined_child.txid_hex in result.detail

    def test_same_outpoint_twice_in_one_transaction(self, tracker, chain):
        t1, _, proof = chain
        greedy = make_tx(t1, t1)
        result = Validator().validate(build(t1, greedy, proofs=[proof]), tracker)
        assert result.failed_txid == greedy.txid
        assert "already spent" in result.detail


# ---------------------------------------------------------------------------
# TestStructuralFailures
# ---------------------------------------------------------------------------

class TestStructuralFailures:

    def test_cycle_detected(self, tracker):
        a_id, b_id = b"\x0a" * 32, b"\x0b" * 32
        a = Transaction(a_id, (TxInput(b_id, 0),), (TxOutput(1),), raw=b"a")
        b = Transaction(b_id, (TxInput(a_id, 0),), (TxOutput(1),), raw=b"b")
        result = Validator().validate(Package([a, b]), tracker)
        assert result.reason is FailureReason.CYCLE_DETECTED
        assert result.failed_txid in (a_id, b_id)
        with pytest.raises(CycleError):
            result.raise_for_failure()

    def test_empty_path_rejected_by_default(self, tracker):
        tx = make_tx()
        tracker.add_root(5, tx.txid)
        proof = MerkleProof(tx.txid, 5, ())
        result = Validator().validate(build(tx, proofs=[proof]), tracker)
        assert result.reason is FailureReason.PROOF_INVALID
        assert "Empty Merkle path" in result.detail

    def test_single_tx_block_opt_in(self, tracker):
        tx = make_tx()
        tracker.add_root(5, tx.txid)
        proof = MerkleProof(tx.txid, 5, ())
        validator = Validator(allow_single_tx_block=True)
        result = validator.validate(build(tx, proofs=[proof]), tracker)
        assert result.valid


# ---------------------------------------------------------------------------
# TestOracleFailures
# ---------------------------------------------------------------------------

class TestOracleFailures:

    def test_unreachable_is_distinct(self, chain):
        t1, t2, proof = chain
        tracker = MagicMock()
        tracker.is_valid_root_for_height.side_effect = OracleUnreachable("node down")
        result = Validator().validate(build(t1, t2, proofs=[proof]), tracker)
        assert result.reason is FailureReason.ORACLE_UNREACHABLE
        assert result.retryable
        assert "node down" in result.detail

    def test_socket_error_is_unreachable(self, chain):
        t1, t2, proof = chain
        tracker = MagicMock()
        tracker.is_valid_root_for_height.side_effect = ConnectionRefusedError()
        result = Validator().validate(build(t1, t2, proofs=[proof]), tracker)
        assert result.reason is FailureReason.ORACLE_UNREACHABLE

    def test_timeout(self, chain):
        t1, t2, proof = chain
        slow = SlowTracker()
        try:
            result = Validator(timeout=0.05).validate(build(t1, t2, proofs=[proof]), slow)
        finally:
            slow.release.set()
        assert result.reason is FailureReason.ORACLE_UNREACHABLE
        assert "did not answer" in result.detail

    def test_parallel_workers(self, tracker):
        roots = [make_tx() for _ in range(6)]
        proofs = mine(tracker, roots, 400, filler=2)
        child = make_tx(*roots)
        pkg = build(child, *roots, proofs=proofs)
        result = Validator(max_workers=4).validate(pkg, tracker)
        assert result.valid
        assert result.transactions[-1] == child


# ---------------------------------------------------------------------------
# TestResult
# ---------------------------------------------------------------------------

class TestResult:

    def test_idempotent(self, tracker, chain):
        t1, t2, proof = chain
        pkg = build(t1, t2, proofs=[proof])
        validator = Validator()
        assert validator.validate(pkg, tracker) == validator.validate(pkg, tracker)

        broken = build(make_tx(external_outpoint("gone")))
        assert validator.validate(broken, tracker) == validator.validate(broken, tracker)

    def test_raise_for_failure(self, tracker, chain):
        t1, t2, proof = chain
        Validator().validate(build(t1, t2, proofs=[proof]), tracker).raise_for_failure()

        missing = Validator().validate(build(t2), tracker)
        with pytest.raises(MissingParent) as exc:
            missing.raise_for_failure()
        assert exc.value.txid == t2.txid

        bad = MerkleProof(t1.txid, 100, [(b"\x01" * 32, False)])
        invalid = Validator().validate(build(t1, proofs=[bad]), tracker)
        with pytest.raises(ProofInvalid):
            invalid.raise_for_failure()

    def test_raise_unreachable(self):
        result = ValidationResult(
            valid=False, reason=FailureReason.ORACLE_UNREACHABLE, detail="timeout",
        )
        with pytest.raises(OracleUnreachable, match="timeout"):
            result.raise_for_failure()

    def test_unspent_outputs(self, tracker):
        root = make_tx(outputs=2)
        (proof,) = mine(tracker, [root], 10)
        child = make_tx((root.txid, 0), outputs=3)
        result = Validator().validate(build(root, child, proofs=[proof]), tracker)
        unspent = [(txid, idx) for txid, idx, _ in result.unspent_outputs()]
        assert unspent == [
            (root.txid, 1),
            (child.txid, 0), (child.txid, 1), (child.txid, 2),
        ]

    def test_logs_rejection(self, tracker, caplog):
        t2 = make_tx(make_tx())
        with caplog.at_level(logging.WARNING, logger="beef.validator"):
            Validator().validate(build(t2), tracker)
        assert "Package rejected" in caplog.text


# ---------------------------------------------------------------------------
# TestAsync
# ---------------------------------------------------------------------------

class TestAsync:

    @pytest.mark.asyncio
    async def test_matches_sync(self, tracker, chain):
        t1, t2, proof = chain
        pkg = build(t1, t2, proofs=[proof])
        validator = Validator()
        assert await validator.validate_async(pkg, tracker) == validator.validate(pkg, tracker)

    @pytest.mark.asyncio
    async def test_many_proofs(self, tracker):
        roots = [make_tx() for _ in range(5)]
        proofs = mine(tracker, roots[:3], 500) + mine(tracker, roots[3:], 501)
        result = await Validator().validate_async(build(*roots, proofs=proofs), tracker)
        assert result.valid
        assert all(s is TxState.CONFIRMED for s in result.states.values())

    @pytest.mark.asyncio
    async def test_timeout(self, chain):
        t1, t2, proof = chain
        slow = SlowTracker()
        try:
            result = await Validator(timeout=0.05).validate_async(
                build(t1, t2, proofs=[proof]), slow,
            )
        finally:
            slow.release.set()
        assert result.reason is FailureReason.ORACLE_UNREACHABLE

    @pytest.mark.asyncio
    async def test_cycle(self, tracker):
        a = Transaction(b"\x01" * 32, (TxInput(b"\x01" * 32, 0),), (TxOutput(1),), raw=b"a")
        result = await Validator().validate_async(Package([a]), tracker)
        assert result.reason is FailureReason.CYCLE_DETECTED
