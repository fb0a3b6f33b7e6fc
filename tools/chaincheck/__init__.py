"""
CHAINCHECK Proof Verification Engine

Read-only verification core for ledger-anchored delivery proofs. Drivers
record a delivery event; a commitment to it is anchored on the ledger.
This package answers four questions about such a proof:

    ┌─────────────────────────────────────────────────────────────────────┐
    │  Did independent witnesses see it?      verify_location             │
    │  What history does the record have?     walk_provenance_chain       │
    │  Which block committed it?              locate_commit_block         │
    │  Has the off-chain copy been altered?   detect_tampering            │
    └─────────────────────────────────────────────────────────────────────┘

Design Principles:

    Degrade, never block: upstream outages yield clearly-flagged degraded,
    partial, pending or inconclusive results instead of exceptions.

    Recompute, never trust labels: tamper detection always hashes content
    itself and compares with the ledger commitment.

    Bounded everything: every network call has a timeout, every walk and
    scan has a ceiling, every poll happens at most once.

Module Index:

    config          YAML/env configuration (ConfigManager, ChainCheckConfig)
    observability   Structured JSON logging, correlation IDs, spans
    transport       httpx JSON transport with explicit timeouts
    envelope        One-step response unwrapping and query handles
    resilience      Deadline, EndpointCascade, QueryBridge, Fallback
    scoring         Consensus scorer, GeoPoint, haversine distance
    verification    VerificationResult and WitnessNode
    degraded        Deterministic degraded-mode synthesizer
    witness         Witness network client and LocationVerifier
    ledger          LedgerReader protocol, JSON-RPC and in-memory readers
    content_store   Payload lookup by hash over HTTP or in memory
    hashing         Canonical payload hashing
    chain           Provenance chain walker
    locator         Commit block locator
    tamper          Tamper detector
    engine          ProofVerificationEngine facade and create_engine
    cli             ``chaincheck`` command line
"""

__version__ = "0.3.0"


def __getattr__(name: str):
    """Lazy import of public names, so importing the package stays cheap."""
    if name in ("ProofVerificationEngine", "create_engine"):
        from tools.chaincheck import engine
        return getattr(engine, name)

    if name in ("ChainCheckConfig", "ConfigManager", "ConfigError", "get_config", "get_config_manager"):
        from tools.chaincheck import config
        return getattr(config, name)

    if name in ("VerificationResult", "WitnessNode", "NodeType", "VerificationSource"):
        from tools.chaincheck import verification
        return getattr(verification, name)

    if name in ("ConsensusTier", "GeoPoint", "ScoringPolicy", "score", "haversine_meters"):
        from tools.chaincheck import scoring
        return getattr(scoring, name)

    if name in ("Deadline", "EndpointCascade", "EndpointRequest", "QueryBridge"):
        from tools.chaincheck import resilience
        return getattr(resilience, name)

    if name in ("ChainLink", "ChainWalker"):
        from tools.chaincheck import chain
        return getattr(chain, name)

    if name in ("BlockLocation", "BlockLocator", "LocationStatus"):
        from tools.chaincheck import locator
        return getattr(locator, name)

    if name in ("TamperDetector", "TamperVerdict", "Verdict"):
        from tools.chaincheck import tamper
        return getattr(tamper, name)

    if name in ("LedgerReader", "LedgerRecord", "JsonRpcLedgerReader", "InMemoryLedger"):
        from tools.chaincheck import ledger
        return getattr(ledger, name)

    raise AttributeError(f"module 'chaincheck' has no attribute '{name}'")


__all__ = [
    "__version__",
    # Engine
    "ProofVerificationEngine",
    "create_engine",
    # Config
    "ChainCheckConfig",
    "ConfigManager",
    "ConfigError",
    "get_config",
    "get_config_manager",
    # Results
    "VerificationResult",
    "WitnessNode",
    "NodeType",
    "VerificationSource",
    "ChainLink",
    "BlockLocation",
    "LocationStatus",
    "TamperVerdict",
    "Verdict",
    # Building blocks
    "ConsensusTier",
    "GeoPoint",
    "ScoringPolicy",
    "score",
    "haversine_meters",
    "Deadline",
    "EndpointCascade",
    "EndpointRequest",
    "QueryBridge",
    "ChainWalker",
    "BlockLocator",
    "TamperDetector",
    "LedgerReader",
    "LedgerRecord",
    "JsonRpcLedgerReader",
    "InMemoryLedger",
]
