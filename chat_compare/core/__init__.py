"""
Core modules for ChatCompare.

This package contains the provider catalog, token ledger, session state,
dispatch engine and ratings.
"""
