# src/stakeledger/api/__init__.py
"""HTTP surface for the staking ledger (FastAPI). Run with `python -m stakeledger.api`."""
