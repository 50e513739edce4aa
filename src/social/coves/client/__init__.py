"""
Coves Client - async client core for the Coves atProto social network

This package implements the non-UI half of a Coves client: session handling,
backend API access, and the observable state stores that a user interface
binds to. Everything runs on a single asyncio event loop.

Key Components:
- app: Configuration, logging setup, metrics and the command line front end
- atproto: HTTP middleware chain, error taxonomy, session/refresh coordination
  and the typed XRPC API
- model: Wire models for sessions, posts, comments, communities and profiles
- state: Observable stores (auth, votes, subscriptions, feeds, comments,
  profiles)
- storage: Encrypted key-value storage for persisted sessions

Architecture Overview:
1. Authentication:
   - The backend runs the OAuth dance and hands the client a sealed token
     through a callback URL
   - The session is persisted encrypted, namespaced by environment
   - Token refresh is single-flight: concurrent callers share one request

2. Requests:
   - Every backend call carries the bearer token
   - A 401 triggers exactly one refresh and one retry, then sign-out

3. State:
   - Votes and subscriptions update optimistically and roll back on failure
   - Feeds, comments and profiles load in cursor-paginated pages
"""
