"""
BEEF — SPV transaction packages for Bitcoin.

A package bundles a set of interdependent transactions together with
Merkle inclusion proofs for the ones already mined, so a recipient can
validate the whole set against block headers alone.

Architecture:
    Producer:  PackageAssembler -> Package -> encode() -> bytes
    Consumer:  bytes -> Package.decode() -> Validator.validate(pkg, tracker)
    Trust:     ChainTracker answers "is this the Merkle root at height N?"
"""

__version__ = "0.1.0"

# Wire format magic (uint32 little-endian on the wire)
BEEF_V1_MAGIC = 0xEFBE0001
BEEF_V2_MAGIC = 0xEFBE0002

DIGEST_SIZE = 32  # double SHA-256

# Sanity ceilings for hostile input. Checked before any allocation.
MAX_TRANSACTIONS = 100_000
MAX_PROOFS = 100_000
MAX_HASHES = 1_000_000
MAX_TX_SIZE = 4 * 1024 * 1024  # 4 MB, consensus block weight bound
MAX_MERKLE_DEPTH = 64
MAX_TX_IO = 100_000  # inputs or outputs per transaction
