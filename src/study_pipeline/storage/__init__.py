"""SQLite storage layer shared by the job queue and usage ledger."""
