"""Keeps a payer's escrow balances funded against outstanding receiver debt."""

__version__ = "0.3.0"
