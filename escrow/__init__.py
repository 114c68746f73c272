"""Delegated authority and multi-party consensus engine for escrow deals."""

__version__ = "1.0.0"
