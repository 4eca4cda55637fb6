"""
Page cache service package.

A full-page response cache that sits in front of any request handler:
- Caches response skeletons with dynamic fragments cut out
- Re-renders those fragments on every serve, hit or miss
- Invalidates by key, tag, path prefix or full flush

Structure:
- app.caching: Framework-agnostic cache core (keys, fragments, stores,
  orchestrator, invalidator).
- app.middleware: Starlette middleware serving pages through the cache.
- app.main: FastAPI management service for invalidation and stats.
"""
