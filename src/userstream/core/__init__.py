"""
Core business logic components.

This package contains the ingestion pipeline and the read path:
- Decoder, Persister and Error Sink stages wired by the pipeline orchestrator
- PII email encryption
- Cache-aside read service and pagination service
- Metrics collection and health checks
"""
