"""
Core modules for SMS Cost Guard.

This package contains segment estimation, pricing, aggregation,
and background reconciliation.
"""
