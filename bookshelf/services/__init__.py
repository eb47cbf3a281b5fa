"""Bookshelf - Services Package

This package contains the Open Library integrations and the services built on them:
- Shared async HTTP client
- Open Library search / works / covers client
- Cover resolution and cover image serving
- Search aggregation with library membership
- Response cache management
"""
