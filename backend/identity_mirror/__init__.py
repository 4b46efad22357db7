"""
Identity mirror backend.

Mirrors Clerk-managed identities into a local, durable user record store:
- Svix-signed webhook ingestion (user.created / user.updated / user.deleted)
- Revision-ordered, idempotent upserts and tombstones
- On-demand provisioning for requests that beat their webhook
- Request-time identity attachment for route handlers
- Client-side retry policy for the eventual-consistency window
"""

__version__ = "0.1.0"
