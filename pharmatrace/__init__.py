"""Ledger-anchored provenance and QR verification for drug batches."""

__version__ = "0.1.0"
