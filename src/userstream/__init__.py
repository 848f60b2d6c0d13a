"""
UserStream - user record ingestion and cache-aside read service

Consumes batches of user records from RabbitMQ, persists them to PostgreSQL
with an encrypted email field, caches them in Redis and serves cached
single-record reads and paginated streams over FastAPI.
"""

__version__ = "0.1.0"

from .main import create_app

__all__ = ["create_app"]
