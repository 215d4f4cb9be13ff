"""
Exception taxonomy for package handling.

Structural errors (DecodeError, CycleError, DuplicateIdConflict) are fatal
to the call that raised them. Validation errors (ProofInvalid,
MissingParent) reject the whole package. OracleUnreachable is transient
and meant to be retried by the caller.
"""

from __future__ import annotations


class BeefError(Exception):
    """Base class for every error raised by this package."""


class ParseError(BeefError):
    """A transaction could not be parsed from its raw bytes."""


class DecodeError(BeefError):
    """Malformed, truncated or oversized package bytes."""


class MalformedProof(BeefError):
    """A Merkle proof is structurally unusable (bad digest size, empty path)."""


class CycleError(BeefError):
    """The dependency graph is not acyclic."""

    def __init__(self, txid: bytes, message: str | None = None) -> None:
        self.txid = txid
        super().__init__(message or f"Dependency cycle through {txid[::-1].hex()}")


class DuplicateIdConflict(BeefError):
    """Two distinct items claim the same transaction id."""

    def __init__(self, txid: bytes, message: str | None = None) -> None:
        self.txid = txid
        super().__init__(
            message or f"Distinct transaction already present under id {txid[::-1].hex()}"
        )


class OrphanProof(BeefError):
    """A Merkle proof refers to a transaction that is not in the package."""

    def __init__(self, txid: bytes) -> None:
        self.txid = txid
        super().__init__(f"Merkle proof for {txid[::-1].hex()} has no transaction")


class AssemblerClosed(BeefError):
    """The assembler was already consumed by build()."""


class OracleUnreachable(BeefError):
    """The chain tracker could not answer (network failure, timeout)."""


class ValidationError(BeefError):
    """A package failed validation. Carries the offending transaction id."""

    def __init__(self, txid: bytes | None, message: str) -> None:
        self.txid = txid
        super().__init__(message)


class ProofInvalid(ValidationError):
    """A Merkle proof does not match the chain's commitment."""


class MissingParent(ValidationError):
    """An unconfirmed transaction spends an output absent from the package."""
