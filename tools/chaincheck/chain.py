"""
Provenance chain walking.

Every anchored record names, per signing address, the hash of that
address's previous record. Following those back-links from a starting
record reconstructs its history, newest first:

    abc ──previous──▶ def ──previous──▶ 000…0   (origin)
    walk("abc", max_depth=5) == [abc, def]

The walk is bounded three ways: it stops at the origin sentinel, after
``max_depth`` back-link hops (so at most ``max_depth + 1`` links), and on
any hash it has already visited. A record that cannot be fetched, or
that lacks back-link fields, ends the walk with whatever was collected;
a partial chain is a valid answer.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from tools.chaincheck.hashing import is_zero_hash, normalize_hash
from tools.chaincheck.ledger import LedgerReadError, LedgerReader, LedgerRecord
from tools.chaincheck.observability import ChainCheckLayer, get_logger
from tools.chaincheck.resilience import Deadline, is_expired

logger = get_logger("walker", ChainCheckLayer.CHAIN)


@dataclass
class ChainLink:
    """One record in a provenance chain."""
    record_hash: str
    depth: int
    previous_hash: Optional[str] = None
    is_origin: bool = False
    record: Optional[LedgerRecord] = None

    def to_dict(self, include_record: bool = False) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "record_hash": self.record_hash,
            "depth": self.depth,
            "previous_hash": self.previous_hash,
            "is_origin": self.is_origin,
        }
        if include_record and self.record is not None:
            d["record"] = self.record.to_dict()
        return d


class ChainWalker:
    """Follows address-indexed back-links through a ledger reader."""

    def __init__(self, ledger: LedgerReader):
        self.ledger = ledger

    def walk(
        self,
        proof_id: str,
        max_depth: int,
        tracking_address: Optional[str] = None,
        deadline: Optional[Deadline] = None,
    ) -> List[ChainLink]:
        if max_depth < 0:
            raise ValueError("max_depth must be non-negative")

        links: List[ChainLink] = []
        visited = set()
        current: Optional[str] = proof_id
        depth = 0

        while current:
            key = normalize_hash(current)
            if key in visited:
                logger.warning("Back-link cycle detected", record_hash=current, depth=depth)
                break
            visited.add(key)

            if is_expired(deadline):
                logger.info("Deadline reached, returning partial chain", links=len(links))
                break

            try:
                record = self.ledger.get_transaction_by_hash(current, deadline=deadline)
            except LedgerReadError as e:
                logger.warning("Ledger read failed, returning partial chain", record_hash=current, error=str(e))
                break
            if record is None:
                logger.info("Record not found, chain ends", record_hash=current, depth=depth)
                break

            if not record.has_back_links:
                links.append(ChainLink(record_hash=current, depth=depth, record=record))
                logger.info("Record has no back-link fields, chain ends", record_hash=current)
                break

            if tracking_address:
                _, found = record.address_index(tracking_address)
                if not found:
                    fallback = record.addresses[0] if record.addresses else None
                    logger.debug(
                        "Tracking address not in record, using first address",
                        tracking_address=tracking_address,
                        record_hash=current,
                    )
                    tracking_address = fallback
            elif record.addresses:
                tracking_address = record.addresses[0]

            previous = record.back_link(tracking_address)
            origin = not previous or is_zero_hash(previous)
            links.append(ChainLink(
                record_hash=current,
                depth=depth,
                previous_hash=None if origin else previous,
                is_origin=origin,
                record=record,
            ))

            if origin or depth >= max_depth:
                break
            current = previous
            depth += 1

        logger.debug("Chain walk finished", proof_id=proof_id, links=len(links))
        return links
