"""
Commit block location.

A record is valid for inclusion between blocks ``nbf`` and ``exp``. Which
block actually committed it is found by three strategies, cheapest first:

    1. embedded   - the record carries ``block``/``blockNumber`` and it
                    differs from ``nbf`` (a value equal to ``nbf`` is only
                    the window start, not a commitment)
    2. direct     - the ledger reader offers ``block_number_for_transaction``
    3. scan       - fetch blocks nbf .. min(exp, current) and look for the
                    transaction hash, examining at most ``max_scan_blocks``

Outcomes are ``committed``, ``pending`` (not found while the window is
still open; a normal answer) and ``unknown`` (record missing, ledger
unreachable, or not found after the window closed).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from tools.chaincheck.ledger import LedgerReadError, LedgerReader, LedgerRecord
from tools.chaincheck.observability import ChainCheckLayer, get_logger
from tools.chaincheck.resilience import Deadline, is_expired

logger = get_logger("locator", ChainCheckLayer.LOCATOR)

DEFAULT_MAX_SCAN_BLOCKS = 100


class LocationStatus(Enum):
    COMMITTED = "committed"
    PENDING = "pending"
    UNKNOWN = "unknown"


class LocateStrategy(Enum):
    EMBEDDED = "embedded"
    DIRECT_LOOKUP = "direct-lookup"
    SCAN = "scan"


@dataclass
class BlockLocation:
    """Where (and whether) a transaction was committed."""
    status: LocationStatus
    block_number: Optional[int] = None
    strategy: Optional[LocateStrategy] = None
    nbf: Optional[int] = None
    exp: Optional[int] = None
    current_block: Optional[int] = None
    scanned_blocks: List[int] = field(default_factory=list)
    reason: str = ""

    @property
    def is_committed(self) -> bool:
        return self.status is LocationStatus.COMMITTED

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "status": self.status.value,
            "is_committed": self.is_committed,
            "block_number": self.block_number,
            "strategy": self.strategy.value if self.strategy else None,
            "nbf": self.nbf,
            "exp": self.exp,
            "current_block": self.current_block,
            "blocks_scanned": len(self.scanned_blocks),
        }
        if self.reason:
            d["reason"] = self.reason
        return d


def unknown(reason: str, record: Optional[LedgerRecord] = None) -> BlockLocation:
    return BlockLocation(
        status=LocationStatus.UNKNOWN,
        nbf=record.nbf if record else None,
        exp=record.exp if record else None,
        reason=reason,
    )


class BlockLocator:
    """Finds the block that committed a ledger transaction."""

    def __init__(self, ledger: LedgerReader, max_scan_blocks: int = DEFAULT_MAX_SCAN_BLOCKS):
        if max_scan_blocks <= 0:
            raise ValueError("max_scan_blocks must be positive")
        self.ledger = ledger
        self.max_scan_blocks = max_scan_blocks

    def locate(self, tx_hash: str, deadline: Optional[Deadline] = None) -> BlockLocation:
        try:
            record = self.ledger.get_transaction_by_hash(tx_hash, deadline=deadline)
        except LedgerReadError as e:
            logger.warning("Ledger unreachable", tx_hash=tx_hash, error=str(e))
            return unknown(f"ledger unreachable: {e}")
        if record is None:
            return unknown("transaction not found")

        nbf, exp = record.nbf, record.exp

        embedded = record.embedded_block
        if embedded is not None and embedded != nbf:
            return BlockLocation(
                status=LocationStatus.COMMITTED,
                block_number=embedded,
                strategy=LocateStrategy.EMBEDDED,
                nbf=nbf,
                exp=exp,
            )

        direct = getattr(self.ledger, "block_number_for_transaction", None)
        if callable(direct):
            try:
                number = direct(tx_hash, deadline=deadline)
            except LedgerReadError as e:
                logger.debug("Direct lookup failed, falling back to scan", tx_hash=tx_hash, error=str(e))
                number = None
            if number is not None:
                return BlockLocation(
                    status=LocationStatus.COMMITTED,
                    block_number=number,
                    strategy=LocateStrategy.DIRECT_LOOKUP,
                    nbf=nbf,
                    exp=exp,
                )

        if nbf is None or exp is None:
            return unknown("record has no validity window", record)

        try:
            current = self.ledger.current_block_number(deadline=deadline)
        except LedgerReadError as e:
            logger.debug("Current block unavailable", error=str(e))
            current = None

        end = exp if current is None or current >= exp else current
        location = BlockLocation(
            status=LocationStatus.PENDING,
            strategy=LocateStrategy.SCAN,
            nbf=nbf,
            exp=exp,
            current_block=current,
        )

        for number in range(nbf, min(end, nbf + self.max_scan_blocks - 1) + 1):
            if is_expired(deadline):
                location.reason = "deadline reached during scan"
                break
            try:
                block = self.ledger.get_block_by_number(number, deadline=deadline)
            except LedgerReadError as e:
                logger.debug("Block unavailable, continuing scan", block=number, error=str(e))
                continue
            location.scanned_blocks.append(number)
            if block is not None and block.contains(tx_hash):
                location.status = LocationStatus.COMMITTED
                location.block_number = number
                return location

        window_open = current is None or current < exp
        if not window_open:
            location.status = LocationStatus.UNKNOWN
            location.reason = location.reason or "not found in scanned blocks after validity window closed"
        else:
            location.reason = location.reason or "not yet committed"
        logger.info(
            "Transaction not located",
            tx_hash=tx_hash,
            status=location.status.value,
            scanned=len(location.scanned_blocks),
        )
        return location
