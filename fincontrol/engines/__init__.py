"""
Computation engines.

Pure functions over a LedgerSnapshot (balances, amortization, insurance
accrual, reporting, ratios). The bills and statements engines also expose
commit operations that take a LedgerStore.
"""
