"""Teaching-practice supervisor posting and allowance engine."""

__version__ = "0.1.0"
