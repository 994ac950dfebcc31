# tinvest_trader/__init__.py
"""Order execution and position reconciliation for the T-Invest broker API."""

__version__ = "0.1.0"
