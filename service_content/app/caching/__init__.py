"""
Content caching package.

Provides the two-tier cache store and everything built on it: slug
registry, warmup coordinator, periodic refresh, invalidation engine and the
ContentCache facade used by routes.
"""
