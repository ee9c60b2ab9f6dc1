"""
Supply Kernel - medical supply quantity ledger.

A transactional ledger for cabinet-dispensed supply items with:
- Per-line quantity lifecycle (used with patient / returned to cabinet)
- Append-only return records
- Derived, write-guarded item status
- Best-effort audit trail for every command
"""

__version__ = "0.1.0"
