#!/usr/bin/env python3
"""
Warm the content cache for the configured content roots.

Runs the same warmup the service performs on startup, against the configured
persistent tier, so a freshly deployed instance starts with hits. Useful from
a deploy hook or a developer workstation.
"""

import argparse
import asyncio
import json
import os
import sys
from pathlib import Path
from typing import List, Optional

from service_content.app.caching.content_cache import ContentCache
from shared.config import get_config
from shared.logging import configure_logging


async def warm(
    *,
    roots: Optional[List[str]],
    depth: int,
    concurrency: int,
    backend: Optional[str],
    use_local: bool,
) -> dict:
    """Execute one warmup and return the status plus quota snapshot."""
    overrides = {
        "warmup_depth": depth,
        "cache_warm_concurrency": concurrency,
        "warmup_on_startup": False,
        "refresh_interval_seconds": 0,
    }
    if roots:
        overrides["content_roots"] = roots
    if backend:
        overrides["persistent_backend"] = backend
    if use_local:
        overrides["use_local_cache"] = True

    config = get_config("content", 8000, **overrides)
    cache = ContentCache.from_config(config)
    await cache.start()
    try:
        status = await cache.ensure_warmup()
        return {
            "warmup": status.to_dict(),
            "rate_limits": cache.get_rate_limit_status(),
            "store": await cache.store.stats(),
        }
    finally:
        await cache.shutdown()


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Warm the content cache for the configured roots.")
    parser.add_argument("--root", action="append", dest="roots", default=None,
                        help="Content root to warm (repeatable, defaults to configured roots)")
    parser.add_argument("--depth", type=int, default=int(os.getenv("CONTENT_WARMUP_DEPTH", 2)),
                        choices=[1, 2, 3, 4],
                        help="1 = roots, 2 = + categories, 3 = + entry directories, 4 = + entry commits and JSON")
    parser.add_argument("--concurrency", type=int, default=int(os.getenv("CONTENT_CACHE_WARM_CONCURRENCY", 5)),
                        help="Concurrent warm operations")
    parser.add_argument("--backend", choices=["file", "redis", "none"], default=None,
                        help="Persistent tier override")
    parser.add_argument("--local", action="store_true", help="Read from the local mirror instead of GitHub")
    parser.add_argument("--log-level", default="warning", help="Log level while warming")
    parser.add_argument("--output", type=Path, default=None, help="Optional path to write JSON summary")
    return parser.parse_args()


def main() -> int:
    args = _parse_args()
    configure_logging("content", args.log_level)
    try:
        summary = asyncio.run(
            warm(
                roots=args.roots,
                depth=args.depth,
                concurrency=args.concurrency,
                backend=args.backend,
                use_local=args.local,
            )
        )
    except KeyboardInterrupt:
        return 130
    except Exception as exc:  # pragma: no cover - CLI surface
        print(f"[cache-warm] failed: {exc}", file=sys.stderr)
        return 1

    print(json.dumps(summary, indent=2))

    if args.output:
        args.output.write_text(json.dumps(summary, indent=2))

    return 0 if not summary["warmup"]["errors"] else 2


if __name__ == "__main__":
    raise SystemExit(main())
