"""
Polite concurrent fetch engine.

This module provides a scheduler that fetches many URLs concurrently while
respecting per-host rate limits and concurrency caps, retrying transient
failures with jittered exponential backoff, and serving repeat requests
from an on-disk response cache.

See DESIGN.md for how the pieces fit together.
"""
