"""Grade-computation engine: components, formulas, final grades and their ledger."""

__version__ = "1.0.0"
