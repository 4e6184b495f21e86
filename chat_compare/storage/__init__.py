"""
Local persistence for token ledger state.
"""
