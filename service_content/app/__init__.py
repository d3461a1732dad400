"""
Content Service package.

The service turns a rate-limited GitHub repository into a low-latency,
internally consistent content source:
- Two-tier cache (memory + disk/Redis) with per-kind TTLs
- Request coalescing and stale-serve when the remote is unusable
- Quota tracking for the REST and GraphQL interfaces
- Warmup, periodic refresh and webhook-driven invalidation

Structure:
- app.main: FastAPI app and routes.
- app.adapters: GitHub client and local mirror source.
- app.caching: Cache store, slugs, warmup, refresh, invalidation and the facade.
- app.ratelimit: Quota tracker.
- app.domain: Remote payload models and the push-notification boundary.
"""
