"""Background workers for scheduled ingestion."""
