"""
Common utilities for org-state.

Modules:
- fingerprint: content hashes of templates and parameters
"""

__all__ = [
    "fingerprint",
]
