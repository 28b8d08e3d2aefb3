"""
messenger-runtime — client runtime core of a secure messaging account.

Purpose
- Package root. The versioned local store (``storage``) and the lazily built
  service handles of an account session (``runtime``).

Functional requirements
- Must not have side effects at import time (no config loading, no logging init).
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
