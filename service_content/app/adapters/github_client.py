"""
GitHub client for the content service.

Every call is admitted by the quota tracker first; a denied call fails with
QuotaExhaustedError without touching the network. Transient failures
(connection errors, 5xx) are retried with bounded backoff behind a circuit
breaker. Rate-limit headers and the GraphQL ``rateLimit`` block are fed back
into the tracker after every response.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx
from pydantic import ValidationError as PydanticValidationError

from shared.circuit_breaker import CircuitBreaker, CircuitBreakerOpenException, CircuitBreakerState
from shared.errors import (
    InvalidDataError,
    NotFoundError,
    QuotaExhaustedError,
    TransientNetworkError,
    UpstreamUnavailableError,
)
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from shared.retry import RetryConfig, RetryError, call_with_retry

from ..caching.keys import normalize_path
from ..domain.models import CommitInfo, ContentItem
from ..ratelimit.quota_tracker import InterfaceKind, QuotaTracker


def _parse_timestamp(value: Any) -> Optional[float]:
    """Parse an epoch-seconds header or an ISO-8601 string."""
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        pass
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00")).timestamp()
    except ValueError:
        return None


class GitHubClient:
    """Client for directory listings, file contents and commits of one repository."""

    def __init__(
        self,
        owner: str,
        repo: str,
        quota: QuotaTracker,
        token: Optional[str] = None,
        api_base: str = "https://api.github.com",
        graphql_url: str = "https://api.github.com/graphql",
        raw_base: str = "https://raw.githubusercontent.com",
        ref: str = "HEAD",
        user_agent: str = "Landing-Page-App/1.0",
        timeout: float = 10.0,
        retry_config: Optional[RetryConfig] = None,
        breaker: Optional[CircuitBreaker] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.owner = owner
        self.repo = repo
        self.quota = quota
        self.token = token
        self.api_base = api_base.rstrip("/")
        self.graphql_url = graphql_url
        self.raw_base = raw_base.rstrip("/")
        self.ref = ref
        self.user_agent = user_agent
        self.timeout = timeout
        self.transport = transport
        self.metrics = metrics
        self.logger = get_logger("content.github_client")

        self.retry_config = retry_config or RetryConfig()
        self.breaker = breaker or CircuitBreaker(expected_exception=TransientNetworkError, name="github")
        if self.breaker.on_state_change is None:
            self.breaker.on_state_change = self._on_breaker_change
        self._client: Optional[httpx.AsyncClient] = None

    @classmethod
    def from_config(cls, config, quota: QuotaTracker, metrics: Optional[MetricsCollector] = None,
                    transport: Optional[httpx.AsyncBaseTransport] = None) -> "GitHubClient":
        return cls(
            owner=config.github_owner,
            repo=config.github_repo,
            quota=quota,
            token=config.github_token,
            api_base=config.github_api_url,
            graphql_url=config.github_graphql_url,
            raw_base=config.github_raw_url,
            ref=config.github_ref,
            user_agent=config.user_agent,
            timeout=config.request_timeout_seconds,
            retry_config=RetryConfig.from_config(config),
            breaker=CircuitBreaker(
                failure_threshold=config.breaker_failure_threshold,
                recovery_timeout=config.breaker_recovery_timeout,
                expected_exception=TransientNetworkError,
                name="github",
            ),
            transport=transport,
            metrics=metrics,
        )

    # ------------------------------------------------------------------
    # Lifecycle

    async def start(self) -> None:
        self._ensure_client()

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "GitHubClient":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {"User-Agent": self.user_agent}
            if self.token:
                headers["Authorization"] = f"Bearer {self.token}"
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                headers=headers,
                transport=self.transport,
            )
        return self._client

    # ------------------------------------------------------------------
    # Request plumbing

    def _on_breaker_change(self, name: str, state: CircuitBreakerState) -> None:
        if self.metrics:
            self.metrics.set_gauge("circuit_breaker_open", 1 if state is CircuitBreakerState.OPEN else 0, name=name)

    def _count(self, interface: InterfaceKind, outcome: str) -> None:
        if self.metrics:
            self.metrics.increment_counter("remote_requests_total", interface=interface.value, outcome=outcome)

    def _record_headers(self, interface: InterfaceKind, response: httpx.Response) -> None:
        remaining = response.headers.get("x-ratelimit-remaining")
        if remaining is None:
            return
        try:
            remaining_value = int(remaining)
        except ValueError:
            return
        limit = response.headers.get("x-ratelimit-limit")
        used = response.headers.get("x-ratelimit-used")
        self.quota.record(
            interface,
            remaining=remaining_value,
            reset_at=_parse_timestamp(response.headers.get("x-ratelimit-reset")),
            limit=int(limit) if limit and limit.isdigit() else None,
            used=int(used) if used and used.isdigit() else None,
        )
        if self.metrics:
            self.metrics.set_gauge("quota_remaining", remaining_value, interface=interface.value)

    @staticmethod
    def _is_quota_refusal(response: httpx.Response) -> bool:
        if response.status_code not in (403, 429):
            return False
        return (
            response.headers.get("x-ratelimit-remaining") == "0"
            or "retry-after" in response.headers
            or response.status_code == 429
        )

    async def _send(
        self,
        interface: InterfaceKind,
        method: str,
        url: str,
        accept: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        """Issue one HTTP attempt and classify its outcome."""
        client = self._ensure_client()
        self.quota.consume(interface)
        try:
            response = await client.request(
                method,
                url,
                params=params,
                json=json_body,
                headers={"Accept": accept},
            )
        except httpx.TransportError as exc:
            self._count(interface, "network_error")
            raise TransientNetworkError(
                f"{method} {url} failed: {exc}",
                details={"path": path, "interface": interface.value},
            ) from exc

        self._record_headers(interface, response)
        status = response.status_code

        if status == 404:
            self._count(interface, "not_found")
            raise NotFoundError(path)

        if self._is_quota_refusal(response):
            now = self.quota.clock()
            reset_at = _parse_timestamp(response.headers.get("x-ratelimit-reset"))
            retry_after_header = response.headers.get("retry-after")
            if retry_after_header and retry_after_header.isdigit():
                reset_at = max(reset_at or 0.0, now + int(retry_after_header))
            self.quota.record_exhausted(interface, reset_at)
            self._count(interface, "quota_exhausted")
            raise QuotaExhaustedError(
                interface.value,
                "Remote reported quota exhaustion",
                retry_after=max(0.0, reset_at - now) if reset_at else None,
                details={"path": path, "status_code": status},
            )

        if status >= 500:
            self._count(interface, "server_error")
            retry_after = response.headers.get("retry-after")
            raise TransientNetworkError(
                f"Remote returned {status}",
                details={"path": path, "status_code": status},
                retry_after=float(retry_after) if retry_after and retry_after.isdigit() else None,
            )

        if status >= 400:
            self._count(interface, "client_error")
            self.logger.error(
                "Remote request rejected",
                url=url,
                status_code=status,
                response=response.text[:500],
            )
            raise UpstreamUnavailableError(
                service="github",
                message=f"Unexpected status {status}",
                details={"status_code": status, "path": path},
            )

        self._count(interface, "success")
        return response

    async def _request(
        self,
        interface: InterfaceKind,
        method: str,
        url: str,
        accept: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        admission = self.quota.admit(interface)
        if not admission:
            self._count(interface, "denied")
            self.logger.warning("Remote call refused locally", interface=interface.value, path=path,
                                reason=admission.reason)
            raise QuotaExhaustedError(
                interface.value,
                admission.reason or "Remote request quota exhausted",
                retry_after=admission.retry_after,
                details={"path": path},
            )

        async def _attempt() -> httpx.Response:
            return await self.breaker.call(
                self._send, interface, method, url, accept, path, params, json_body
            )

        def _on_retry(attempt: int, error: BaseException, delay: float) -> None:
            self._count(interface, "retried")

        try:
            return await call_with_retry(
                _attempt,
                exceptions=(TransientNetworkError,),
                config=self.retry_config,
                name=f"github.{interface.value}",
                on_retry=_on_retry,
            )
        except RetryError as exc:
            raise UpstreamUnavailableError(
                service="github",
                message=str(exc.last_exception),
                details={"path": path, "attempts": exc.attempts},
            ) from exc
        except CircuitBreakerOpenException as exc:
            self._count(interface, "breaker_open")
            raise UpstreamUnavailableError(
                service="github",
                message=str(exc),
                details={"path": path, "retry_after": round(exc.retry_after, 3)},
            ) from exc

    @staticmethod
    def _json(response: httpx.Response, path: str) -> Any:
        try:
            return response.json()
        except ValueError as exc:
            raise InvalidDataError(path, "Response is not valid JSON") from exc

    def _repo_url(self, *parts: str) -> str:
        return "/".join([f"{self.api_base}/repos/{self.owner}/{self.repo}", *parts])

    def _ref_params(self) -> Dict[str, str]:
        return {"ref": self.ref} if self.ref and self.ref != "HEAD" else {}

    # ------------------------------------------------------------------
    # Fetch operations

    async def fetch_directory(self, path: str) -> List[Dict[str, Any]]:
        """Directory listing as a list of item dicts."""
        path = normalize_path(path)
        response = await self._request(
            InterfaceKind.REST,
            "GET",
            self._repo_url("contents", quote(path)),
            accept="application/vnd.github.v3+json",
            path=path,
            params=self._ref_params() or None,
        )
        payload = self._json(response, path)
        if not isinstance(payload, list):
            raise InvalidDataError(path, "Expected a directory listing")
        try:
            return [ContentItem.model_validate(raw).model_dump() for raw in payload]
        except PydanticValidationError as exc:
            raise InvalidDataError(path, "Malformed directory listing", {"errors": exc.errors()}) from exc

    async def fetch_file(self, path: str) -> bytes:
        """Raw file contents."""
        path = normalize_path(path)
        response = await self._request(
            InterfaceKind.REST,
            "GET",
            self._repo_url("contents", quote(path)),
            accept="application/vnd.github.raw",
            path=path,
            params=self._ref_params() or None,
        )
        return response.content

    async def fetch_latest_commit(self, path: str) -> Optional[Dict[str, Any]]:
        """Most recent commit touching ``path``, or None when the path has no history."""
        path = normalize_path(path)
        params: Dict[str, Any] = {"path": path, "per_page": 1}
        if self.ref and self.ref != "HEAD":
            params["sha"] = self.ref
        response = await self._request(
            InterfaceKind.REST,
            "GET",
            self._repo_url("commits"),
            accept="application/vnd.github.v3+json",
            path=path,
            params=params,
        )
        payload = self._json(response, path)
        if not isinstance(payload, list):
            raise InvalidDataError(path, "Expected a commit list")
        if not payload:
            return None
        return CommitInfo.from_api(payload[0]).model_dump()

    async def fetch_batched(self, query: str, variables: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Run a GraphQL query and return its ``data`` block."""
        response = await self._request(
            InterfaceKind.BATCHED,
            "POST",
            self.graphql_url,
            accept="application/vnd.github.v4+json",
            path="graphql",
            json_body={"query": query, "variables": variables or {}},
        )
        payload = self._json(response, "graphql")
        if not isinstance(payload, dict):
            raise InvalidDataError("graphql", "Expected a GraphQL response object")

        data = payload.get("data") or {}
        rate_limit = data.get("rateLimit")
        if rate_limit:
            self.quota.record(
                InterfaceKind.BATCHED,
                remaining=rate_limit.get("remaining", 0),
                reset_at=_parse_timestamp(rate_limit.get("resetAt")),
                limit=rate_limit.get("limit"),
                used=rate_limit.get("used"),
            )
            if self.metrics:
                self.metrics.set_gauge("quota_remaining", rate_limit.get("remaining", 0),
                                       interface=InterfaceKind.BATCHED.value)

        errors = payload.get("errors") or []
        if any(error.get("type") == "RATE_LIMITED" for error in errors):
            status = self.quota.status(InterfaceKind.BATCHED)
            self.quota.record_exhausted(InterfaceKind.BATCHED, status.reset_at)
            raise QuotaExhaustedError(InterfaceKind.BATCHED.value, "GraphQL rate limit exceeded")
        if errors:
            messages = [error.get("message", "unknown error") for error in errors]
            if not data:
                raise InvalidDataError("graphql", "; ".join(messages))
            self.logger.warning("GraphQL query returned partial errors", errors=messages)
        return data

    async def fetch_trees(self, paths: List[str]) -> Dict[str, List[Dict[str, Any]]]:
        """
        Fetch several directory listings in one batched query.

        Paths that do not exist (or are not directories) are absent from the result.
        """
        normalized = [normalize_path(path) for path in paths]
        if not normalized:
            return {}

        declarations = ["$owner: String!", "$repo: String!"]
        selections = []
        variables: Dict[str, Any] = {"owner": self.owner, "repo": self.repo}
        for index, path in enumerate(normalized):
            declarations.append(f"$e{index}: String!")
            selections.append(
                f"t{index}: object(expression: $e{index}) "
                "{ ... on Tree { entries { name type oid size } } }"
            )
            variables[f"e{index}"] = f"{self.ref}:{path}"

        query = (
            f"query({', '.join(declarations)}) {{ "
            f"repository(owner: $owner, name: $repo) {{ {' '.join(selections)} }} "
            "rateLimit { limit remaining resetAt used } }"
        )
        data = await self.fetch_batched(query, variables)
        repository = data.get("repository") or {}

        trees: Dict[str, List[Dict[str, Any]]] = {}
        for index, path in enumerate(normalized):
            node = repository.get(f"t{index}")
            if not node or "entries" not in node:
                continue
            try:
                trees[path] = [self._tree_item(path, entry) for entry in node["entries"]]
            except (KeyError, PydanticValidationError) as exc:
                raise InvalidDataError(path, "Malformed tree entries") from exc
        return trees

    def _tree_item(self, parent: str, entry: Dict[str, Any]) -> Dict[str, Any]:
        item_path = f"{parent}/{entry['name']}" if parent else entry["name"]
        is_file = entry["type"] == "blob"
        quoted = quote(item_path)
        return ContentItem(
            name=entry["name"],
            path=item_path,
            type=entry["type"],
            size=entry.get("size") or 0,
            sha=entry.get("oid"),
            download_url=f"{self.raw_base}/{self.owner}/{self.repo}/{self.ref}/{quoted}" if is_file else None,
            html_url=f"https://github.com/{self.owner}/{self.repo}/{'blob' if is_file else 'tree'}/{self.ref}/{quoted}",
        ).model_dump()
