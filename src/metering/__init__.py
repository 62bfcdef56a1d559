"""Token metering: rounding policy, balance queries, consumption gate,
grant ingestion and metered session lifecycle.

Depends on the LedgerStore port only; concrete stores are injected by the
composition root (src.main).
"""
