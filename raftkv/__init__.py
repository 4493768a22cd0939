"""Replicated key-value store built on Raft consensus with a small RPC layer."""

__version__ = "0.1.0"
__all__ = ["__version__"]