"""Daily stock ledger: store, event synchronizers, propagation and backfill."""
