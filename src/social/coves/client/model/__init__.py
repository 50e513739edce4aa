"""
Coves Client Models

Pydantic models for the JSON documents exchanged with the Coves backend, and
the dataclasses holding paginated load state.

Key Components:
- base.py: Shared model configuration (camelCase aliases, lenient lists)
- session.py: The persisted OAuth session
- post.py: Posts and feed pages
- comment.py: Comment threads
- community.py: Communities and subscription responses
- profile.py: User profiles
- vote.py: Vote state and vote responses
- feed_state.py: Paginated load state for feeds and comment lists
"""
