"""Redirect resolution: edge cache, coalesced store lookup, experiments, deferred work.

Request Flow Diagram
====================
::
    ┌─────────────┐
    │  GET /:slug  │
    └──────┬──────┘
           ▼
    ┌─────────────┐  empty slug → 404, non-read method → 405
    │  validate    │
    └──────┬──────┘
           ▼
    ┌─────────────┐
    │ edge cache   │
    │ match(key)   │
    └──────┬──────┘
    HIT?  │
    ┌─────┴──────────────┐
    │ NO                  │ YES
    ▼                     ▼
┌──────────────┐   ┌──────────────────────┐
│ coalesced    │   │ canonical location + │
│ store fetch  │   │ deterministic variant│
└──────┬───────┘   └──────────┬───────────┘
       ▼                      │
┌──────────────┐              │
│ variant per  │              │
│ distribution │              │
└──────┬───────┘              │
       └──────────┬───────────┘
                  ▼
          ┌──────────────┐
          │ 302 redirect │──► deferred: cache write (leader, miss only),
          └──────────────┘              analytics + health probe

Key Behaviours
===============
- The edge cache key ignores the query string; entries hold the canonical,
  pre-variant destination, so a cache hit re-derives the variant with the
  deterministic strategy regardless of the configured distribution.
- Store failures are answered as not-found; cache read failures as a miss.
- Only the coalescing leader writes the cache entry.
- Deferred tasks are isolated: an exception is logged and dropped.
"""

import logging
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Optional

from prometheus_client import Counter, Histogram
from starlette.responses import PlainTextResponse, Response

from redirector.coalescer import LookupCoalescer
from redirector.context import RequestContext
from redirector.edge_cache import EdgeCache, make_cache_key
from redirector.enums import RequestStatus, ResolutionSource
from redirector.exceptions import BackendLookupFailure, CacheReadFailure, MethodNotAllowed, NotFoundSlug
from redirector.fingerprint import RequestFingerprinter
from redirector.schemas import (
    CachedRedirect,
    ClickEventSummary,
    ExperimentConfig,
    ResolvedDestination,
    ShortLinkRecord,
    is_absolute_url,
)
from redirector.telemetry import HealthTask, TelemetryDispatcher
from redirector.variants import extract_utm_params, merge_utm_params, resolve_experiment

__all__ = [
    "READ_METHODS",
    "SLUG_PATTERN",
    "CLIENT_REDIRECT_STATUS",
    "DeferredTask",
    "ResolveOutcome",
    "RedirectResolver",
    "build_client_redirect_response",
]

logger = logging.getLogger("redirector.resolver")

READ_METHODS = frozenset({"GET", "HEAD"})
SLUG_PATTERN = re.compile(r"[A-Za-z0-9_-]+")
CLIENT_REDIRECT_STATUS = 302

DeferredTask = Callable[[], Awaitable[None]]


# ============================================================================
# PROMETHEUS METRICS
# ============================================================================

REDIRECT_REQUESTS_TOTAL = Counter(
    "redirector_requests_total",
    "Total redirect resolutions",
    ["status", "source"],
)
RESOLUTION_DURATION = Histogram(
    "redirector_resolution_duration_seconds",
    "Time taken to answer a redirect request",
    buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0],
)
DEFERRED_TASK_FAILURES_TOTAL = Counter(
    "redirector_deferred_task_failures_total",
    "Deferred tasks that raised after the response was sent",
    ["task"],
)


# ============================================================================
# RESPONSES
# ============================================================================


def build_client_redirect_response(location: str) -> Response:
    return Response(
        content=b"",
        status_code=CLIENT_REDIRECT_STATUS,
        headers={
            "Location": location,
            "Cache-Control": "no-store, no-cache, max-age=0, must-revalidate",
            "Pragma": "no-cache",
            "Expires": "0",
        },
        media_type="text/plain; charset=utf-8",
    )


def build_not_found_response() -> Response:
    return PlainTextResponse("Not found", status_code=404)


def build_method_not_allowed_response() -> Response:
    return PlainTextResponse("Method not allowed", status_code=405, headers={"Allow": "GET, HEAD"})


@dataclass
class ResolveOutcome:
    response: Response
    destination: Optional[ResolvedDestination] = None
    deferred: list[DeferredTask] = field(default_factory=list)


# ============================================================================
# RESOLVER
# ============================================================================


class RedirectResolver:
    """Turns a slug into a redirect response plus the work to run after it."""

    def __init__(
        self,
        edge_cache: EdgeCache,
        coalescer: LookupCoalescer,
        fingerprinter: RequestFingerprinter,
        dispatcher: TelemetryDispatcher,
    ):
        self._edge_cache = edge_cache
        self._coalescer = coalescer
        self._fingerprinter = fingerprinter
        self._dispatcher = dispatcher

    async def resolve(self, slug: str, ctx: RequestContext) -> ResolveOutcome:
        ctx.add_tag("redirect")
        log = ctx.logger

        with RESOLUTION_DURATION.time():
            try:
                if not slug:
                    raise NotFoundSlug(slug, "empty slug")
                if not SLUG_PATTERN.fullmatch(slug):
                    raise NotFoundSlug(slug, "malformed slug")
                if ctx.method not in READ_METHODS:
                    raise MethodNotAllowed(ctx.method)
                destination, deferred = await self._resolve_destination(slug, ctx)
            except MethodNotAllowed as exc:
                log.warning(f"Blocked non-read request: {exc}")
                REDIRECT_REQUESTS_TOTAL.labels(status=RequestStatus.METHOD_NOT_ALLOWED, source="none").inc()
                return ResolveOutcome(response=build_method_not_allowed_response())
            except NotFoundSlug as exc:
                log.warning(f"Redirect failed: {exc}")
                REDIRECT_REQUESTS_TOTAL.labels(status=RequestStatus.NOT_FOUND, source="none").inc()
                return ResolveOutcome(response=build_not_found_response())

        REDIRECT_REQUESTS_TOTAL.labels(status=RequestStatus.SUCCESS, source=destination.source).inc()
        log.info(
            f"Redirecting {slug} -> {destination.url}",
            extra={
                "operation": "redirect",
                "source": destination.source.value,
                "variant_id": destination.variant_id,
                "duration_ms": ctx.get_duration(),
            },
        )
        return ResolveOutcome(
            response=build_client_redirect_response(destination.url),
            destination=destination,
            deferred=deferred,
        )

    # ========================================================================
    # RESOLUTION PATHS
    # ========================================================================

    async def _resolve_destination(
        self, slug: str, ctx: RequestContext
    ) -> tuple[ResolvedDestination, list[DeferredTask]]:
        cache_key = make_cache_key(ctx.url)
        session_id = self._fingerprinter.session_id(ctx)

        cached = await self._match_cache(cache_key, ctx)
        if cached is not None:
            return self._resolve_from_cache(slug, ctx, cached, session_id)
        return await self._resolve_from_store(slug, ctx, cache_key, session_id)

    async def _match_cache(self, cache_key: str, ctx: RequestContext) -> Optional[CachedRedirect]:
        try:
            cached = await self._edge_cache.match(cache_key)
        except CacheReadFailure as exc:
            ctx.logger.error(f"Edge cache read failed, treating as miss: {exc}")
            return None

        if cached is not None and not is_absolute_url(cached.location):
            ctx.logger.warning(f"Ignoring cached entry with invalid location for {cache_key}")
            return None
        return cached

    def _resolve_from_cache(
        self,
        slug: str,
        ctx: RequestContext,
        cached: CachedRedirect,
        session_id: str,
    ) -> tuple[ResolvedDestination, list[DeferredTask]]:
        ctx.add_tag("cache_hit")
        # cached responses must keep each visitor on one variant, so always deterministic here
        url, variant_id = self._apply_experiment(
            cached.location, cached.experiment, session_id, force_deterministic=True, ctx=ctx
        )
        destination = ResolvedDestination(url=url, variant_id=variant_id, source=ResolutionSource.CACHE)
        latency_ms = ctx.get_duration()

        async def telemetry_after_hit() -> None:
            record = await self._lookup_record_quietly(slug, ctx)
            await self._emit_telemetry(ctx, slug, destination, latency_ms, record)

        return destination, [self._isolated("telemetry", slug, ctx, telemetry_after_hit)]

    async def _resolve_from_store(
        self,
        slug: str,
        ctx: RequestContext,
        cache_key: str,
        session_id: str,
    ) -> tuple[ResolvedDestination, list[DeferredTask]]:
        ctx.add_tag("cache_miss")
        try:
            lookup = await self._coalescer.fetch(slug)
        except BackendLookupFailure as exc:
            ctx.logger.error(f"Backend lookup failed for {slug}: {exc}")
            raise NotFoundSlug(slug, "backend lookup failed") from exc

        record = lookup.record
        if record is None:
            raise NotFoundSlug(slug)
        if not record.has_valid_destination:
            raise NotFoundSlug(slug, f"destination {record.destination!r} is not an absolute URL")

        canonical = merge_utm_params(record.destination, record.utm_params)
        url, variant_id = self._apply_experiment(canonical, record.experiment, session_id, ctx=ctx)
        source = ResolutionSource.STORE if lookup.leader else ResolutionSource.COALESCED_FOLLOWER
        destination = ResolvedDestination(url=url, variant_id=variant_id, source=source)
        latency_ms = ctx.get_duration()

        deferred: list[DeferredTask] = []
        if lookup.leader:
            entry = CachedRedirect(location=canonical, experiment=record.experiment, version=record.version)

            async def write_cache() -> None:
                await self._edge_cache.put(cache_key, entry)
                ctx.logger.debug(f"Stored redirect for {cache_key}")

            deferred.append(self._isolated("cache_write", slug, ctx, write_cache))

        async def telemetry_after_miss() -> None:
            await self._emit_telemetry(ctx, slug, destination, latency_ms, record)

        deferred.append(self._isolated("telemetry", slug, ctx, telemetry_after_miss))
        return destination, deferred

    # ========================================================================
    # PRIVATE HELPER METHODS
    # ========================================================================

    def _apply_experiment(
        self,
        canonical: str,
        experiment: Optional[ExperimentConfig],
        session_id: str,
        force_deterministic: bool = False,
        ctx: Optional[RequestContext] = None,
    ) -> tuple[str, Optional[str]]:
        choice = resolve_experiment(experiment, session_id, force_deterministic=force_deterministic)
        if choice is None:
            return canonical, None
        if not is_absolute_url(choice.url):
            (ctx.logger if ctx else logger).warning(
                f"Variant {choice.variant_id} has an invalid URL, using canonical destination"
            )
            return canonical, None
        return merge_utm_params(choice.url, extract_utm_params(canonical)), choice.variant_id

    async def _lookup_record_quietly(self, slug: str, ctx: RequestContext) -> Optional[ShortLinkRecord]:
        try:
            lookup = await self._coalescer.fetch(slug)
        except BackendLookupFailure as exc:
            ctx.logger.warning(f"Background record lookup failed for {slug}: {exc}")
            return None
        return lookup.record

    async def _emit_telemetry(
        self,
        ctx: RequestContext,
        slug: str,
        destination: ResolvedDestination,
        latency_ms: float,
        record: Optional[ShortLinkRecord],
    ) -> None:
        event = await self._fingerprinter.build(
            ctx,
            destination.url,
            slug,
            latency_ms,
            record,
            redirect_status=CLIENT_REDIRECT_STATUS,
            variant_id=destination.variant_id,
        )

        health_task = None
        if record is not None and record.is_active and record.is_owned and not event.is_bot:
            health_task = HealthTask(
                destination=destination.url,
                link_id=record.link_id,
                user_id=record.user_id,
                request_id=ctx.request_id,
                click=ClickEventSummary.from_event(event),
            )

        ctx.logger.debug(f"Dispatching telemetry for {slug} ({destination.source.value})")
        await self._dispatcher.dispatch(event, health_task)

    def _isolated(
        self,
        name: str,
        slug: str,
        ctx: RequestContext,
        func: Callable[[], Awaitable[Any]],
    ) -> DeferredTask:
        async def run() -> None:
            try:
                await func()
            except Exception as exc:
                DEFERRED_TASK_FAILURES_TOTAL.labels(task=name).inc()
                ctx.logger.error(
                    f"Deferred task {name} failed for {slug}: {exc}",
                    extra={"operation": name, "slug": slug},
                )

        run.__name__ = f"deferred_{name}"
        return run
