"""Transaction reconciliation and categorization engine."""

__version__ = "0.1.0"
