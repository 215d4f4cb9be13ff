"""
Dependency graph over the transactions of a package.

An edge A -> B exists when one of B's inputs spends an output of A and A
is in the set. ``order`` is Kahn's algorithm with a min-heap of ready
nodes, so among valid topological orders the one chosen always takes the
smallest ready txid first. Two sets with the same members therefore
serialize identically regardless of insertion order.
"""

from __future__ import annotations

import heapq
from typing import Collection, Iterable

from beef.errors import CycleError
from beef.tx import Transaction


def _index(transactions: Iterable[Transaction]) -> dict[bytes, Transaction]:
    by_id: dict[bytes, Transaction] = {}
    for tx in transactions:
        by_id.setdefault(tx.txid, tx)
    return by_id


def order(transactions: Iterable[Transaction]) -> list[Transaction]:
    """Parents strictly before children, ties broken by ascending txid.

    Raises:
        CycleError: naming a transaction that lies on a cycle.
    """
    by_id = _index(transactions)

    children: dict[bytes, list[bytes]] = {txid: [] for txid in by_id}
    in_degree: dict[bytes, int] = dict.fromkeys(by_id, 0)
    for txid, tx in by_id.items():
        for parent in tx.parent_txids:
            if parent in by_id:
                children[parent].append(txid)
                in_degree[txid] += 1

    ready = [txid for txid, deg in in_degree.items() if deg == 0]
    heapq.heapify(ready)
    result: list[Transaction] = []
    while ready:
        txid = heapq.heappop(ready)
        result.append(by_id[txid])
        for child in children[txid]:
            in_degree[child] -= 1
            if in_degree[child] == 0:
                heapq.heappush(ready, child)

    if len(result) != len(by_id):
        stuck = {txid for txid, deg in in_degree.items() if deg > 0}
        raise CycleError(_find_cycle_member(stuck, by_id))
    return result


def _find_cycle_member(stuck: set[bytes], by_id: dict[bytes, Transaction]) -> bytes:
    """Return a node on a cycle among the nodes Kahn could not release.

    Every stuck node has a stuck parent, so walking parents from any of
    them must revisit a node; the first repeat is on a cycle.
    """
    current = min(stuck)
    seen: set[bytes] = set()
    while current not in seen:
        seen.add(current)
        current = min(p for p in by_id[current].parent_txids if p in stuck)
    return current


def missing_parents(transactions: Iterable[Transaction]) -> dict[bytes, tuple[bytes, ...]]:
    """Map each transaction with dangling inputs to the absent parent ids."""
    by_id = _index(transactions)
    missing = {}
    for txid, tx in by_id.items():
        absent = tuple(p for p in tx.parent_txids if p not in by_id)
        if absent:
            missing[txid] = absent
    return missing


def ancestors(
    txid: bytes,
    transactions: Iterable[Transaction],
    stop_at: Collection[bytes] = (),
) -> set[bytes]:
    """Transitive in-set ancestry of ``txid``, including ``txid`` itself.

    Traversal does not continue past ids in ``stop_at`` (typically the
    transactions that carry a Merkle proof), but those ids are included.
    """
    by_id = _index(transactions)
    if txid not in by_id:
        raise KeyError(txid[::-1].hex())

    found = {txid}
    stack = [txid]
    while stack:
        current = stack.pop()
        if current in stop_at:
            continue
        for parent in by_id[current].parent_txids:
            if parent in by_id and parent not in found:
                found.add(parent)
                stack.append(parent)
    return found
