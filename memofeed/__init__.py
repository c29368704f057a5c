"""
memofeed

Rebuilds a content feed (publications, likes and tips) from memo transactions
on a public ledger and submits new events through rate-limited gateways:
- Gateway endpoint pool with probing, cooldowns and rotation
- Registry discovery via an owner-signed manifest
- Cursor pagination and like/tip tallies over ledger history
- Write pipeline with an injected signer and best-effort confirmation
"""

__version__ = "0.1.0"
