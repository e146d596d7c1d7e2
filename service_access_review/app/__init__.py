"""
Access Review service package.

This package runs periodic access certification for managed
applications. It provides:

- app.main: API surface for imports, campaigns, item actions and health.
- app.reconciliation: Keeps the account store in step with source extracts.
- app.sod: Segregation-of-Duties policies and the conflict engine.
- app.campaigns: Review cycle lifecycle, item decisions and reassignment.
- app.directory: Identity and application lookups, with optional caching.
- app.persistence: Document store with optimistic concurrency.
"""
