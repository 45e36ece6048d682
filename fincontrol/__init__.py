"""
Family Financial Control - Core Package

Ledger, reconciliation and accrual reporting for one household's money.

DESIGN PRINCIPLES:
1. The ledger is the single source of truth
2. Every mutation is validated before it lands, or rejected whole
3. Reports are pure functions of a snapshot
4. Every step must be auditable
5. Storage layer is swappable
"""

__version__ = "1.0.0"
__author__ = "Family Financial Control Team"
