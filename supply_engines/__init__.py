"""
Module: supply_engines
Responsibility:
    Pure calculation engines for the supply platform.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May import supply_kernel logging and sibling engine modules.
    MUST NOT import supply_services.

Invariants enforced:
    - Purity: engines never read the clock; windows and timestamps arrive
      as parameters.
    - Determinism: identical inputs always produce identical outputs,
      including row order.

Usage:
    from supply_engines.reconciliation import DispensedUsageComparator
"""
