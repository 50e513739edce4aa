"""
Network layer for the Coves backend.

- chain.py: aiohttp middleware chain (metrics, bearer token, 401 refresh/retry)
- errors.py: ApiError taxonomy and status/exception mapping
- auth.py: session lifecycle and the single-flight token refresh
- api.py: typed XRPC queries and procedures
- votes.py / comments.py: record writes for votes and comments
"""
