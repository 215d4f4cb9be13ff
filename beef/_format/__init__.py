"""
Package codec — version dispatch for the V1 and V2 wire layouts.

The 4-byte magic is resolved to a FormatVersion once; the body is then
handed to that version's LayoutCodec. Nothing outside this module
branches on the version.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from beef._format.spec import (
    DEFAULT_VERSION,
    MAGIC_SIZE,
    DecodeLimits,
    FormatVersion,
    LayoutCodec,
)
from beef._format.v1 import V1Codec
from beef._format.v2 import V2Codec
from beef._format.wire import ByteReader, ByteWriter
from beef.errors import BeefError, DecodeError

if TYPE_CHECKING:
    from beef.package import Package
    from beef.tx import TransactionDecoder

logger = logging.getLogger(__name__)

_CODECS: dict[FormatVersion, LayoutCodec] = {
    FormatVersion.V1: V1Codec(),
    FormatVersion.V2: V2Codec(),
}

_BY_MAGIC = {v.magic: v for v in FormatVersion}


def sniff_version(data: bytes) -> FormatVersion:
    """Identify the format from the first four bytes.

    Raises DecodeError for short input or an unknown marker.
    """
    if len(data) < MAGIC_SIZE:
        raise DecodeError(f"Input too short for version marker: {len(data)} bytes")
    magic = int.from_bytes(data[:MAGIC_SIZE], "little")
    version = _BY_MAGIC.get(magic)
    if version is None:
        raise DecodeError(f"Unknown version marker: {bytes(data[:MAGIC_SIZE]).hex()}")
    return version


def encode(package: Package, version: FormatVersion | None = None) -> bytes:
    """Serialize a package. Defaults to the package's own format version."""
    version = version or package.version
    ordered = package.order()
    position = {tx.txid: i for i, tx in enumerate(ordered)}
    proofs = sorted(package.proofs.values(), key=lambda p: position[p.subject_txid])

    w = ByteWriter()
    w.write_u32(version.magic)
    _CODECS[version].write(w, ordered, proofs)
    return w.getvalue()


def decode(
    data: bytes,
    decoder: TransactionDecoder | None = None,
    limits: DecodeLimits | None = None,
) -> Package:
    """Parse package bytes.

    Raises:
        DecodeError: truncated or trailing bytes, unknown marker, a count
            above ``limits``, an out-of-range table index, an unparseable
            transaction, or duplicate/orphan entries.
    """
    from beef.package import Package
    from beef.tx import BitcoinTxDecoder

    version = sniff_version(data)
    r = ByteReader(data)
    r.read(MAGIC_SIZE)
    transactions, proofs = _CODECS[version].read(
        r, decoder or BitcoinTxDecoder(), limits or DecodeLimits()
    )
    if not r.at_end():
        raise DecodeError(f"{r.remaining} trailing bytes after package body")

    by_subject = {}
    for proof in proofs:
        if proof.subject_txid in by_subject:
            raise DecodeError(f"More than one proof for {proof.subject_hex}")
        by_subject[proof.subject_txid] = proof

    try:
        package = Package(transactions, by_subject, version=version)
    except BeefError as e:
        raise DecodeError(f"Inconsistent package: {e}") from e

    logger.debug(
        "Decoded %s package: %d transactions, %d proofs",
        version.name, len(transactions), len(by_subject),
    )
    return package


__all__ = [
    "DEFAULT_VERSION",
    "DecodeLimits",
    "FormatVersion",
    "decode",
    "encode",
    "sniff_version",
]
