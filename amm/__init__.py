"""LS-LMSR automated market maker for prediction markets."""

__version__ = "0.1.0"
