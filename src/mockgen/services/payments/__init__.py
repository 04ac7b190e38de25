"""Credit ledger and commerce platform payment webhook ingestion."""
