"""ReportSync: per-tenant OAuth credential lifecycle and scheduled report ingestion."""

__version__ = "0.1.0"
