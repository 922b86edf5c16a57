"""SQLite storage for accounting facts, posting runs, VAT filings, tax cases and webhook events."""

__version__ = "0.1.0"

__all__ = ["__version__"]