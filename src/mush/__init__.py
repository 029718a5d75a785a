"""Mush - local agent runtime.

Claims jobs from a remote queue and runs them inside an interactive
terminal harness.
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
