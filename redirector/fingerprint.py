"""Request enrichment: device, browser, OS, bot and session signals.

Every signal is derived from a fixed, ordered list of rules. Structured
client hints win over user-agent parsing when they are present.

Derivation Order
================
::
    device   sec-ch-ua-mobile=?1 ─► mobile
             else UA rules: tablet ─► mobile ─► desktop
    browser  sec-ch-ua brands (placeholders dropped, fixed precedence)
             else UA rules (mobile-specific tokens first: CriOS before Safari)
    os       sec-ch-ua-platform (normalized)
             else UA rules (iOS, Android before Linux)
    is_bot   edge score <= threshold or verified-bot flag
             else UA keyword regex
    session  sha256(ip_hash + user_agent)[:32]

Key Behaviours
===============
- An empty user agent yields ``None`` for device, browser and OS.
- The first-click flag is a set-if-absent marker in the backing store;
  when it cannot be evaluated the event still goes out with ``True``.
- UTM attribution: query string first, stored link parameters second.
"""

import datetime
import hashlib
import logging
import re
from collections.abc import Callable, Sequence
from typing import Optional, Protocol

from redirector.config import Settings
from redirector.context import RequestContext
from redirector.enums import DeviceType
from redirector.exceptions import RedirectorError, SessionFlagEvaluationFailure
from redirector.schemas import AnalyticsEvent, ShortLinkRecord
from redirector.variants import UTM_KEYS, session_fingerprint

__all__ = [
    "RequestFingerprinter",
    "sha256_hex",
    "detect_device_type",
    "detect_browser",
    "detect_os",
    "detect_bot",
    "parse_client_hint_brands",
    "client_ip_from",
]

logger = logging.getLogger("redirector.fingerprint")

Rule = tuple[Callable[[str], bool], str]


def _contains(*tokens: str) -> Callable[[str], bool]:
    return lambda ua: any(token in ua for token in tokens)


def _matches(pattern: str) -> Callable[[str], bool]:
    compiled = re.compile(pattern)
    return lambda ua: compiled.search(ua) is not None


DEVICE_RULES: Sequence[Rule] = (
    (_matches(r"tablet|ipad|playbook|silk|android(?!.*mobi)"), DeviceType.TABLET),
    (
        _matches(
            r"mobile|iphone|ipod|android|blackberry|opera mini|opera mobi|skyfire|maemo"
            r"|windows phone|palm|iemobile|symbian|symbianos|fennec"
        ),
        DeviceType.MOBILE,
    ),
    (lambda ua: True, DeviceType.DESKTOP),
)

BROWSER_UA_RULES: Sequence[Rule] = (
    (_contains("edg/", "edga/", "edgios/"), "Edge"),
    (_contains("opr/", "opera"), "Opera"),
    (_contains("samsungbrowser"), "Samsung Internet"),
    (_contains("yabrowser"), "Yandex"),
    (_contains("vivaldi"), "Vivaldi"),
    (_contains("crios/"), "Chrome"),
    (_contains("fxios/"), "Firefox"),
    (_contains("firefox/"), "Firefox"),
    (_contains("chrome/", "chromium/"), "Chrome"),
    (_contains("safari/"), "Safari"),
    (_contains("msie ", "trident/"), "Internet Explorer"),
)

# client-hint brand → normalized name, in precedence order
BRAND_PRECEDENCE: Sequence[tuple[str, str]] = (
    ("brave", "Brave"),
    ("opera", "Opera"),
    ("microsoft edge", "Edge"),
    ("samsung internet", "Samsung Internet"),
    ("vivaldi", "Vivaldi"),
    ("yandex", "Yandex"),
    ("google chrome", "Chrome"),
    ("chromium", "Chromium"),
)

OS_UA_RULES: Sequence[Rule] = (
    (_matches(r"iphone|ipad|ipod"), "iOS"),
    (_contains("android"), "Android"),
    (_matches(r"cros\s"), "ChromeOS"),
    (_contains("windows"), "Windows"),
    (_contains("mac os x", "macintosh"), "macOS"),
    (_contains("linux"), "Linux"),
)

PLATFORM_NAMES = {
    "windows": "Windows",
    "macos": "macOS",
    "mac os x": "macOS",
    "ios": "iOS",
    "android": "Android",
    "chrome os": "ChromeOS",
    "chromeos": "ChromeOS",
    "chromium os": "ChromeOS",
    "linux": "Linux",
}

BOT_UA_PATTERN = re.compile(
    r"(bot|crawler|spider|crawling|curl|wget|httpclient|python-requests|libwww|bingpreview"
    r"|facebookexternalhit|slurp|mediapartners-google|phantomjs|headless|puppeteer|lighthouse"
    r"|semrush|ahrefs|yandex|googlebot|bingbot|duckduckbot)",
    re.IGNORECASE,
)

_BRAND_PATTERN = re.compile(r'"([^"]+)"\s*;\s*v="[^"]*"')


def _first_match(rules: Sequence[Rule], value: str) -> Optional[str]:
    for predicate, result in rules:
        if predicate(value):
            return result
    return None


def sha256_hex(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def parse_client_hint_brands(header: Optional[str]) -> list[str]:
    """Brand names from ``sec-ch-ua``, without GREASE placeholders like ``Not-A.Brand``."""
    if not header:
        return []
    brands = []
    for brand in _BRAND_PATTERN.findall(header):
        lowered = brand.lower()
        if "not" in lowered and "brand" in lowered:
            continue
        brands.append(brand.strip())
    return brands


def detect_device_type(user_agent: str, mobile_hint: Optional[str] = None) -> Optional[str]:
    if mobile_hint is not None and mobile_hint.strip() == "?1":
        return DeviceType.MOBILE
    if not user_agent:
        return None
    return _first_match(DEVICE_RULES, user_agent.lower())


def detect_browser(user_agent: str, brands_header: Optional[str] = None) -> Optional[str]:
    brands = [brand.lower() for brand in parse_client_hint_brands(brands_header)]
    if brands:
        for token, name in BRAND_PRECEDENCE:
            if any(token in brand for brand in brands):
                return name
        return parse_client_hint_brands(brands_header)[0]

    if not user_agent:
        return None
    return _first_match(BROWSER_UA_RULES, user_agent.lower())


def detect_os(user_agent: str, platform_hint: Optional[str] = None) -> Optional[str]:
    platform = (platform_hint or "").replace('"', "").strip()
    if platform and platform.lower() != "unknown":
        return PLATFORM_NAMES.get(platform.lower(), platform)

    if not user_agent:
        return None
    return _first_match(OS_UA_RULES, user_agent.lower())


def detect_bot(
    user_agent: str,
    bot_score: Optional[str] = None,
    verified_bot: Optional[str] = None,
    threshold: int = 30,
) -> bool:
    if verified_bot is not None and verified_bot.strip().lower() in ("1", "true", "yes"):
        return True
    if bot_score is not None:
        try:
            if float(bot_score) <= threshold:
                return True
        except ValueError:
            logger.debug(f"Ignoring non-numeric bot score {bot_score!r}")

    if not user_agent:
        return False
    return BOT_UA_PATTERN.search(user_agent) is not None


def client_ip_from(ctx: RequestContext) -> str:
    if ctx.header("cf-connecting-ip"):
        return ctx.header("cf-connecting-ip")
    forwarded = ctx.header("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return ctx.client_ip or ""


def _datacenter_from(ctx: RequestContext, default: str) -> str:
    # ray ids look like "8a1b2c3d4e5f6789-AMS"
    ray = ctx.header("cf-ray") or ""
    if "-" in ray:
        return ray.rsplit("-", 1)[1]
    return default


class SessionMarkerStore(Protocol):
    async def set(self, key: str, value, ttl_seconds: int, only_if_absent: bool = False) -> bool: ...


class RequestFingerprinter:
    """Builds the immutable analytics event for one redirect."""

    def __init__(self, settings: Settings, store: Optional[SessionMarkerStore] = None):
        self._settings = settings
        self._store = store

    def ip_hash(self, ctx: RequestContext) -> str:
        return sha256_hex(client_ip_from(ctx))

    def session_id(self, ctx: RequestContext) -> str:
        return session_fingerprint(self.ip_hash(ctx), ctx.user_agent, self._settings.SESSION_ID_LENGTH)

    def is_bot(self, ctx: RequestContext) -> bool:
        return detect_bot(
            ctx.user_agent,
            ctx.header(self._settings.BOT_SCORE_HEADER),
            ctx.header(self._settings.VERIFIED_BOT_HEADER),
            self._settings.BOT_SCORE_THRESHOLD,
        )

    def utm_attribution(self, ctx: RequestContext, record: Optional[ShortLinkRecord]) -> dict[str, Optional[str]]:
        query = ctx.query_params
        stored = record.utm_params if record else {}
        return {key: query.get(key) or stored.get(key) or None for key in UTM_KEYS}

    async def is_first_click(self, session_id: str, slug: str) -> bool:
        """True for the first observer of ``session_id`` on ``slug`` within the TTL window."""
        if self._store is None:
            return True
        key = f"{self._settings.SESSION_KEY_PREFIX}:{session_id}:{slug}"
        try:
            return await self._store.set(key, 1, self._settings.SESSION_TTL_SECONDS, only_if_absent=True)
        except RedirectorError as exc:
            raise SessionFlagEvaluationFailure(f"Session marker {key} unavailable: {exc}") from exc

    async def build(
        self,
        ctx: RequestContext,
        destination: str,
        slug: str,
        latency_ms: float,
        record: Optional[ShortLinkRecord] = None,
        redirect_status: int = 302,
        variant_id: Optional[str] = None,
    ) -> AnalyticsEvent:
        user_agent = ctx.user_agent
        session_id = self.session_id(ctx)

        try:
            first_click = await self.is_first_click(session_id, slug)
        except SessionFlagEvaluationFailure as exc:
            ctx.logger.warning(f"First-click flag defaulted for {slug}: {exc}")
            first_click = True

        language = None
        if ctx.header("accept-language"):
            language = ctx.header("accept-language").split(",")[0].strip() or None

        return AnalyticsEvent(
            idempotency_key=ctx.request_id,
            occurred_at=datetime.datetime.now(datetime.timezone.utc),
            link_slug=slug,
            short_url=f"{ctx.origin}/{slug}",
            link_id=record.link_id if record else None,
            user_id=record.user_id if record else None,
            destination_url=destination,
            redirect_status=redirect_status,
            tracking_enabled=self._settings.TRACKING_ENABLED,
            latency_ms_worker=latency_ms,
            session_id=session_id,
            first_click_of_session=first_click,
            request_id=ctx.request_id,
            worker_datacenter=_datacenter_from(ctx, self._settings.WORKER_DATACENTER),
            worker_version=self._settings.WORKER_VERSION,
            user_agent=user_agent,
            device_type=detect_device_type(user_agent, ctx.header("sec-ch-ua-mobile")),
            browser=detect_browser(user_agent, ctx.header("sec-ch-ua")),
            os=detect_os(user_agent, ctx.header("sec-ch-ua-platform")),
            ip_hash=self.ip_hash(ctx),
            country=ctx.header("cf-ipcountry") or "",
            region=ctx.header("cf-region"),
            city=ctx.header("cf-ipcity"),
            referer=ctx.header("referer") or ctx.header("referrer"),
            is_bot=self.is_bot(ctx),
            language=language,
            timezone=ctx.header("cf-timezone"),
            variant_id=variant_id,
            **self.utm_attribution(ctx, record),
        )
