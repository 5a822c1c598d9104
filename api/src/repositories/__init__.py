"""Data access layer.

Repositories wrap an asyncpg pool and expose the queries the services need.
"""
