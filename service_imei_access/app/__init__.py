"""
IMEI Access Service package for the fleet console.

This package decides whether a technician, or an administrator acting for
a reseller, may view or verify a device identified by IMEI. It provides:

- app.main: API surface for access checks, device data and verification.
- app.service: Orchestration of stores, resolvers and audit.
- app.restrictions: Restriction model, single-technician and cumulative
  resolvers.
- app.verification: Gap-window deduplication of verification logs.
- app.stores: Store interfaces with in-memory and PostgreSQL backends.

Guidelines:
- Decisions are computed fresh on every request; do not cache verdicts.
- Denials are results, not exceptions; unknown devices and store failures
  are exceptions.
"""
