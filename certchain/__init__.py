"""Bulk certificate issuance service with on-chain anchoring."""

__version__ = "1.0.0"
