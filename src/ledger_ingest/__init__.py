"""
ledger-ingest: heterogeneous statement ingestion into a deduplicated ledger.

Pipeline:
1. Adapters extract accounts and raw records (PDF, CSV, XLSX, API pages)
2. Fingerprints filter re-imported records
3. Records are canonicalized through per-account-type sign tables
4. Raw records, transactions and batch rows commit as one unit of work
5. Ledger rules select transactions for statistics and balances
"""

__version__ = "0.1.0"
