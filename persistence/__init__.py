"""
Persistence for the remote runtime: session-scoped manifest cache backends.
"""
