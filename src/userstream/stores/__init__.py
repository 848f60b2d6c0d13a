"""
Adapters for the external collaborators.

- PostgreSQL durable store (asyncpg)
- Redis cache (redis.asyncio)
- RabbitMQ ingestion source and publisher (aio-pika)
"""
