"""Simulated boundary-tag heap allocator, block and list renderers, and a scenario harness."""

__version__ = "0.1.0"
__all__ = ["heap", "report", "harness"]