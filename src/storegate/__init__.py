"""
Storegate: multi-tenant identity and connection routing.
"""

__version__ = "0.1.0"
