"""
Ledger services: gateway pool, codec, feed reading and writing.
"""
