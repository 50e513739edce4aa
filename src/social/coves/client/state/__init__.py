"""
Observable stores.

Each store is a ``ChangeNotifier``: register a callable with
``add_listener`` and it is called after every change.

- auth.py: session state and sign-in/sign-out
- votes.py: optimistic votes and score adjustments
- subscriptions.py: optimistic community subscriptions
- feed.py: Discover and For You feeds
- comments.py: comment threads of one post
- profile.py: profile LRU cache and the profile on screen
"""
