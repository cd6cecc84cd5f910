"""Backend for sharing converted JSONL conversation logs.

This package intentionally keeps FastAPI route handlers thin:
- session storage under a sandboxed root
- generation fingerprint + per-session cache markers
- on-demand regeneration through the external converter
- fixed-window rate limiting

Security note:
Session IDs are treated as capability tokens (unguessable UUID4). Anyone with the
session id can view that conversation, so keep them high-entropy and never log
or expose filesystem paths in responses.
"""
