"""
Entitlements Service package for the Access Engine.

Decides what an account may hold and reconciles it when the tier changes:

- app.main: API surface for tier lookups, quota checks, sub-accounts,
  billing events and the downgrade sweep.
- app.catalog: tier table, versioned policy, effective-tier resolution.
- app.permissions: effective permission sets.
- app.subaccounts: sub-account ownership and packs.
- app.cleanup: downgrade cleanup and reinstatement, with audit records.
- app.billing: inbound subscription-change events.
- app.jobs: the scheduled downgrade sweep.
"""
