"""Risk-scored, approval-gated execution of natural-language AWS operations."""

__version__ = "0.1.0"
