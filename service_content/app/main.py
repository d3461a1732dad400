"""
Content service: cache status, administration, webhook and read API routes.
"""

import hmac
import json
from typing import Any, Dict, Optional

from fastapi import Header, Query, Request, Response
from pydantic import BaseModel

from shared.base_service import BaseService
from shared.config import ServiceConfig
from shared.errors import (
    AuthenticationError,
    ContentLayerException,
    NotFoundError,
    ValidationError,
)

from .caching.content_cache import ContentCache
from .caching.keys import EntryKind
from .domain.webhooks import apply_change_batch, parse_push_payload, verify_signature
from .ratelimit.quota_tracker import InterfaceKind


class CacheActionRequest(BaseModel):
    action: str


class InvalidateRequest(BaseModel):
    path: Optional[str] = None
    kind: Optional[EntryKind] = None
    pattern: Optional[str] = None


class ContentService(BaseService):
    """Content cache service implementation."""

    def __init__(self, config: Optional[ServiceConfig] = None, content_cache: Optional[ContentCache] = None):
        super().__init__("content", 8000, config)
        self.content_cache = content_cache or ContentCache.from_config(self.config, metrics=self.metrics)

        @self.app.on_event("startup")
        async def _startup():
            await self.content_cache.start()

        @self.app.on_event("shutdown")
        async def _shutdown():
            await self.content_cache.shutdown()

        self._setup_cache_routes()
        self._setup_webhook_routes()
        self._setup_content_routes()

        self.app.state.content_service = self

    async def _check_dependencies(self) -> Dict[str, str]:
        """Report whether the remote interfaces currently admit calls."""
        quota = self.content_cache.quota
        dependencies = {
            f"remote_{kind.value}": "ok" if quota.admit(kind) else "throttled"
            for kind in InterfaceKind
        }
        breaker = getattr(self.content_cache.source, "breaker", None)
        if breaker is not None:
            dependencies["remote_link"] = "open" if breaker.is_open() else "ok"
        return dependencies

    def _require_admin(self, authorization: Optional[str]) -> None:
        expected = self.config.resolved_admin_token()
        if not expected:
            raise AuthenticationError("Administrative token not configured")
        scheme, _, token = (authorization or "").partition(" ")
        if scheme.lower() != "bearer" or not hmac.compare_digest(token.strip(), expected):
            raise AuthenticationError("Unauthorized")

    def _setup_cache_routes(self):
        """Set up cache status and administration routes."""

        @self.app.get("/")
        async def root():
            return {
                "service": "content",
                "message": "Content cache service",
                "version": "1.0.0",
                "roots": self.content_cache.roots,
            }

        @self.app.get("/api/cache/status")
        async def cache_status(response: Response):
            """Composite snapshot of warmup, refresh, quota and store state."""
            response.headers["Cache-Control"] = "no-cache"
            return {"success": True, "data": await self.content_cache.get_cache_stats()}

        @self.app.post("/api/cache/status")
        async def cache_action(body: CacheActionRequest, authorization: Optional[str] = Header(None)):
            self._require_admin(authorization)

            if body.action == "clear":
                await self.content_cache.clear_cache()
                return {"success": True, "message": "All caches cleared successfully"}

            if body.action == "warmup":
                status = await self.content_cache.ensure_warmup()
                return {"success": True, "warmup": status.to_dict()}

            raise ValidationError("Unknown action", details={"action": body.action})

        @self.app.post("/api/cache/invalidate")
        async def invalidate(body: InvalidateRequest, authorization: Optional[str] = Header(None)):
            self._require_admin(authorization)

            if body.pattern:
                count = await self.content_cache.invalidate_cache_by_pattern(body.pattern)
                return {"success": True, "pattern": body.pattern, "invalidated": count}

            if body.path is not None:
                removed = await self.content_cache.invalidate_cache_path(body.path, body.kind)
                return {"success": True, "path": body.path, "invalidated": removed}

            raise ValidationError("Either path or pattern is required")

    def _setup_webhook_routes(self):
        """Set up the push notification receiver."""

        @self.app.post("/api/webhooks/github")
        async def github_webhook(request: Request):
            secret = self.config.webhook_secret
            if not secret:
                self.logger.error("Webhook secret not configured")
                raise ContentLayerException("WEBHOOK_NOT_CONFIGURED", "Webhook not configured")

            body = await request.body()
            if not verify_signature(body, request.headers.get("X-Hub-Signature-256"), secret):
                self.logger.warning("Webhook signature rejected")
                raise AuthenticationError("Invalid signature")

            try:
                payload = json.loads(body)
            except ValueError as exc:
                raise ValidationError("Invalid payload") from exc
            if not isinstance(payload, dict):
                raise ValidationError("Invalid payload")

            event_type = request.headers.get("X-GitHub-Event")
            if event_type != "push":
                self.logger.info("Ignoring webhook event", event_type=event_type)
                return {"message": f"Event type {event_type} ignored", "processed": False}

            try:
                batch = parse_push_payload(payload)
            except ValueError as exc:
                raise ValidationError("Invalid push payload", details={"error": str(exc)}) from exc

            result = await apply_change_batch(
                self.content_cache.invalidation, batch, self.content_cache.roots
            )
            return {
                "message": "Webhook processed successfully",
                "processed": True,
                "commits": len(payload.get("commits") or []),
                "ref": payload.get("ref"),
                **result,
            }

        @self.app.get("/api/webhooks/github")
        async def webhook_health():
            configured = bool(self.config.webhook_secret)
            return {
                "status": "ok",
                "configured": configured,
                "message": "Webhook endpoint is ready to receive events"
                if configured else "Webhook secret not configured",
            }

    def _setup_content_routes(self):
        """Set up read routes over the content cache."""

        @self.app.get("/api/content/directory")
        async def directory(path: str = Query("")):
            self.content_cache.trigger_warmup()
            return {"path": path, "items": await self.content_cache.get_directory_contents(path)}

        @self.app.get("/api/content/file")
        async def file_data(path: str = Query(..., min_length=1)):
            self.content_cache.trigger_warmup()
            data = await self.content_cache.get_json_data(path)
            if data is None:
                raise NotFoundError(path)
            return {"path": path, "data": data}

        @self.app.get("/api/content/commit")
        async def latest_commit(path: str = Query(..., min_length=1)):
            self.content_cache.trigger_warmup()
            return {"path": path, "commit": await self.content_cache.get_latest_commit(path)}

        @self.app.get("/api/content/versions")
        async def versions(path: str = Query(..., min_length=1)):
            self.content_cache.trigger_warmup()
            return {"path": path, "versions": await self.content_cache.get_file_versions(path)}

        @self.app.get("/api/content/thumbnail")
        async def thumbnail(path: str = Query(..., min_length=1)):
            url = await self.content_cache.get_character_thumbnail(path)
            if url is None:
                raise NotFoundError(path)
            return {"path": path, "url": url}

        @self.app.get("/api/content/slug")
        async def slug(name: str = Query(..., min_length=1), path: str = Query(..., min_length=1)):
            return {"name": name, "path": path, "slug": self.content_cache.get_cached_slug(name, path)}

        @self.app.get("/api/content/by-slug")
        async def by_slug(dir: str = Query(...), slug: str = Query(..., min_length=1)) -> Dict[str, Any]:
            self.content_cache.trigger_warmup()
            item = await self.content_cache.find_by_slug(dir, slug)
            if item is None:
                raise NotFoundError(f"{dir}/{slug}")
            return {"item": item}


def create_app():
    """Create FastAPI application."""
    service = ContentService()
    return service.app


if __name__ == "__main__":
    service = ContentService()
    service.run()
