"""Multi-source market-data consensus with guardrail-gated risk planning."""

__version__ = "0.1.0"
