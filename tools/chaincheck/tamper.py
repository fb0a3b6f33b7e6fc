"""
Tamper detection for off-chain payload copies.

The ledger commits to a payload by hash. The content store holds a copy
that anyone with write access could have edited, including its own
``_hash`` label. The detector therefore never trusts that label: it
takes the committed hash from the ledger record, recomputes the hash of
the fetched copy from its content, and compares the two.

    ledger record ──payload_hashes[schema]──▶ expected
    content store ──payload──strip _meta──▶ sha256(canonical) ──▶ recomputed

    expected == recomputed  ->  verified
    expected != recomputed  ->  tampered      (whatever _hash says)
    either side missing     ->  inconclusive  (with the reason)
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from tools.chaincheck.content_store import ContentStore
from tools.chaincheck.hashing import content_equal, hashes_equal, normalize_hash, payload_hash
from tools.chaincheck.ledger import LedgerReadError, LedgerReader
from tools.chaincheck.observability import ChainCheckLayer, get_logger
from tools.chaincheck.resilience import Deadline

logger = get_logger("detector", ChainCheckLayer.TAMPER)


class Verdict(Enum):
    VERIFIED = "verified"
    TAMPERED = "tampered"
    INCONCLUSIVE = "inconclusive"


@dataclass
class TamperVerdict:
    """Result of comparing an off-chain copy against its on-chain commitment."""
    verdict: Verdict
    explanation: str
    proof_id: str = ""
    expected_hash: Optional[str] = None
    recomputed_hash: Optional[str] = None
    self_reported_hash: Optional[str] = None
    self_reported_hash_matches: Optional[bool] = None
    local_copy_matches: Optional[bool] = None

    @property
    def is_tampered(self) -> bool:
        return self.verdict is Verdict.TAMPERED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "verdict": self.verdict.value,
            "explanation": self.explanation,
            "proof_id": self.proof_id,
            "expected_hash": self.expected_hash,
            "recomputed_hash": self.recomputed_hash,
            "self_reported_hash": self.self_reported_hash,
            "self_reported_hash_matches": self.self_reported_hash_matches,
            "local_copy_matches": self.local_copy_matches,
        }


class TamperDetector:
    """Recomputes payload hashes and compares them with the ledger commitment."""

    def __init__(
        self,
        ledger: LedgerReader,
        content_store: ContentStore,
        anchored_schema: str = "network.xyo.chaincheck",
    ):
        self.ledger = ledger
        self.content_store = content_store
        self.anchored_schema = anchored_schema

    def detect(
        self,
        proof_id: str,
        locally_held_record: Optional[Mapping[str, Any]] = None,
        deadline: Optional[Deadline] = None,
    ) -> TamperVerdict:
        try:
            record = self.ledger.get_transaction_by_hash(proof_id, deadline=deadline)
        except LedgerReadError as e:
            return self._inconclusive(proof_id, f"ledger unreachable: {e}")
        if record is None:
            return self._inconclusive(proof_id, "anchored record not found on ledger")

        expected = record.payload_hash_for_schema(self.anchored_schema)
        if not expected:
            return self._inconclusive(
                proof_id, f"record does not commit to a {self.anchored_schema} payload"
            )

        if getattr(self.content_store, "disabled", False):
            return self._inconclusive(proof_id, "content store disabled", expected)

        fetched = self.content_store.get_payload_by_hash(expected, deadline)
        if fetched is None:
            return self._inconclusive(proof_id, "payload not available from content store", expected)

        try:
            recomputed = payload_hash(fetched)
        except (TypeError, ValueError) as e:
            return self._inconclusive(proof_id, f"payload cannot be canonicalized: {e}", expected)

        self_reported = fetched.get("_hash") if isinstance(fetched.get("_hash"), str) else None
        local_matches = None
        if locally_held_record is not None:
            try:
                local_matches = content_equal(locally_held_record, fetched)
            except (TypeError, ValueError):
                local_matches = False

        verdict = TamperVerdict(
            verdict=Verdict.VERIFIED,
            explanation="recomputed payload hash matches the on-chain commitment",
            proof_id=proof_id,
            expected_hash=normalize_hash(expected),
            recomputed_hash=recomputed,
            self_reported_hash=self_reported,
            self_reported_hash_matches=hashes_equal(self_reported, expected) if self_reported else None,
            local_copy_matches=local_matches,
        )
        if not hashes_equal(recomputed, expected):
            verdict.verdict = Verdict.TAMPERED
            verdict.explanation = "recomputed payload hash differs from the on-chain commitment"
            if verdict.self_reported_hash_matches:
                verdict.explanation += "; the stored _hash label was left unchanged"
            logger.warning(
                "Tampered payload detected",
                operation="detect",
                proof_id=proof_id,
                expected=verdict.expected_hash,
                recomputed=recomputed,
            )
        else:
            logger.info("Payload matches on-chain commitment", operation="detect", proof_id=proof_id)
        return verdict

    def _inconclusive(self, proof_id: str, reason: str, expected: Optional[str] = None) -> TamperVerdict:
        logger.info("Tamper check inconclusive", operation="detect", proof_id=proof_id, reason=reason)
        return TamperVerdict(
            verdict=Verdict.INCONCLUSIVE,
            explanation=reason,
            proof_id=proof_id,
            expected_hash=normalize_hash(expected) if expected else None,
        )
