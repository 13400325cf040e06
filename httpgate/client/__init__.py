"""HTTP request pipeline.

Provides async infrastructure for dispatching structured requests with:
  - Configuration merging (client defaults + per-request spec)
  - Response Cache (TTL, lazy pruning)
  - Interceptor Chain (request/response transforms, stable handles)
  - Concurrency Gate (FIFO slot hand-off)
  - Retrying Transport Call (exponential backoff, timeouts, cancellation)
  - Stream Decoder (SSE / NDJSON events)
"""
