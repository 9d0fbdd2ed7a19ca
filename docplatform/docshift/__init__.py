"""
DocShift - schema evolution and deployment safety for document stores.

This package versions an application's document schema, migrates stored
documents between schema versions, protects the data while doing so, and
rolls schema changes out to running environments.

Architecture:
                    ┌────────────────────────┐
                    │ DeploymentOrchestrator │
                    └───────────┬────────────┘
                                │
       ┌───────────┬────────────┼────────────┬────────────┐
       ▼           ▼            ▼            ▼            ▼
  ┌─────────┐ ┌─────────┐ ┌───────────┐ ┌──────────┐ ┌──────────┐
  │ Version │ │ Backup  │ │ Migration │ │ Monitor  │ │ Rollback │
  │Registry │ │ Manager │ │  Engine   │ │          │ │  System  │
  └────┬────┘ └────┬────┘ └─────┬─────┘ └────┬─────┘ └────┬─────┘
       │           │            │            │            │
       ▼           ▼            ▼            ▼            ▼
  ┌─────────────────────────────────────────────────────────────┐
  │   DocumentStore (in-memory / SQLite), bounded write groups  │
  └─────────────────────────────────────────────────────────────┘

Invariants:
    - The registry's current version only ever advances
    - Every store mutation goes through a write group bounded by the store cap
    - Dry runs share the live code path up to the commit boundary
    - Bookkeeping lives in collections prefixed with "_"; they are never migrated

How to change safely:
    - New operation kinds need a handler in the engine dispatch table
    - New bookkeeping collections must keep the "_" prefix
    - Persisted record shapes are append-only (add keys, never rename)
"""

from ._version import __version__

__all__ = ["__version__"]
