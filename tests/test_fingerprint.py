"""Request enrichment tests: device, browser, OS, bot detection and event building."""

import pytest

from conftest import BROWSER_UA, FakeLinkStore
from redirector.enums import DeviceType
from redirector.fingerprint import (
    RequestFingerprinter,
    client_ip_from,
    detect_bot,
    detect_browser,
    detect_device_type,
    detect_os,
    parse_client_hint_brands,
    sha256_hex,
)
from redirector.schemas import ShortLinkRecord
from redirector.variants import session_fingerprint

IPHONE_SAFARI = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.0 Mobile/15E148 Safari/604.1"
)
IPHONE_CHROME = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) CriOS/120.0.6099.119 Mobile/15E148 Safari/604.1"
)
IPHONE_FIREFOX = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) FxiOS/121.0 Mobile/15E148 Safari/605.1.15"
)
IPAD = (
    "Mozilla/5.0 (iPad; CPU OS 17_0 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.0 Mobile/15E148 Safari/604.1"
)
ANDROID_PHONE = (
    "Mozilla/5.0 (Linux; Android 14; Pixel 8) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Mobile Safari/537.36"
)
ANDROID_TABLET = (
    "Mozilla/5.0 (Linux; Android 13; SM-X700) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
EDGE_DESKTOP = BROWSER_UA + " Edg/120.0.2210.91"
FIREFOX_MAC = "Mozilla/5.0 (Macintosh; Intel Mac OS X 14.1; rv:121.0) Gecko/20100101 Firefox/121.0"
GOOGLEBOT = "Mozilla/5.0 (compatible; Googlebot/2.1; +http://www.google.com/bot.html)"


# ============================================================================
# DEVICE / BROWSER / OS
# ============================================================================


@pytest.mark.parametrize(
    "user_agent,expected",
    [
        (IPHONE_SAFARI, DeviceType.MOBILE),
        (ANDROID_PHONE, DeviceType.MOBILE),
        (IPAD, DeviceType.TABLET),
        (ANDROID_TABLET, DeviceType.TABLET),
        (BROWSER_UA, DeviceType.DESKTOP),
        ("", None),
    ],
)
def test_detect_device_type(user_agent: str, expected) -> None:
    assert detect_device_type(user_agent) == expected


def test_mobile_client_hint_wins() -> None:
    assert detect_device_type(BROWSER_UA, "?1") == DeviceType.MOBILE
    assert detect_device_type(BROWSER_UA, "?0") == DeviceType.DESKTOP


@pytest.mark.parametrize(
    "user_agent,expected",
    [
        (EDGE_DESKTOP, "Edge"),
        (IPHONE_CHROME, "Chrome"),
        (IPHONE_FIREFOX, "Firefox"),
        (IPHONE_SAFARI, "Safari"),
        (FIREFOX_MAC, "Firefox"),
        (BROWSER_UA, "Chrome"),
        ("", None),
    ],
)
def test_detect_browser_from_user_agent(user_agent: str, expected) -> None:
    assert detect_browser(user_agent) == expected


def test_detect_browser_prefers_client_hint_brands() -> None:
    chrome = '"Not_A Brand";v="8", "Chromium";v="120", "Google Chrome";v="120"'
    brave = '"Brave";v="120", "Chromium";v="120", "Not_A Brand";v="24"'
    edge = '"Chromium";v="120", "Microsoft Edge";v="120", "Not?A_Brand";v="8"'

    assert detect_browser(FIREFOX_MAC, chrome) == "Chrome"
    assert detect_browser(BROWSER_UA, brave) == "Brave"
    assert detect_browser(BROWSER_UA, edge) == "Edge"


def test_parse_client_hint_brands_drops_placeholders() -> None:
    header = '"Not_A Brand";v="8", "Chromium";v="120", "Google Chrome";v="120"'
    assert parse_client_hint_brands(header) == ["Chromium", "Google Chrome"]
    assert parse_client_hint_brands(None) == []


@pytest.mark.parametrize(
    "user_agent,platform,expected",
    [
        (IPHONE_SAFARI, None, "iOS"),
        (ANDROID_PHONE, None, "Android"),
        (BROWSER_UA, None, "Windows"),
        (FIREFOX_MAC, None, "macOS"),
        (BROWSER_UA, '"macOS"', "macOS"),
        (BROWSER_UA, '"Chrome OS"', "ChromeOS"),
        (ANDROID_PHONE, '"Unknown"', "Android"),
        ("", None, None),
    ],
)
def test_detect_os(user_agent: str, platform, expected) -> None:
    assert detect_os(user_agent, platform) == expected


# ============================================================================
# BOTS
# ============================================================================


def test_detect_bot_from_user_agent() -> None:
    assert detect_bot(GOOGLEBOT) is True
    assert detect_bot("curl/8.4.0") is True
    assert detect_bot(BROWSER_UA) is False
    assert detect_bot("") is False


def test_detect_bot_from_edge_signals() -> None:
    assert detect_bot(BROWSER_UA, bot_score="12") is True
    assert detect_bot(BROWSER_UA, bot_score="30") is True
    assert detect_bot(BROWSER_UA, bot_score="99") is False
    assert detect_bot(BROWSER_UA, bot_score="n/a") is False
    assert detect_bot(BROWSER_UA, verified_bot="true") is True


# ============================================================================
# CLIENT IP / SESSION
# ============================================================================


def test_client_ip_prefers_edge_header(make_ctx) -> None:
    ctx = make_ctx(headers={"cf-connecting-ip": "198.51.100.1", "x-forwarded-for": "192.0.2.1, 10.0.0.1"})
    assert client_ip_from(ctx) == "198.51.100.1"

    ctx = make_ctx(headers={"x-forwarded-for": "192.0.2.1, 10.0.0.1"})
    assert client_ip_from(ctx) == "192.0.2.1"

    assert client_ip_from(make_ctx(client_ip="203.0.113.9")) == "203.0.113.9"


def test_session_id_is_derived_from_ip_hash_and_user_agent(settings, make_ctx) -> None:
    fingerprinter = RequestFingerprinter(settings)
    ctx = make_ctx()
    assert fingerprinter.session_id(ctx) == session_fingerprint(sha256_hex("203.0.113.7"), BROWSER_UA)


# ============================================================================
# EVENT BUILDING
# ============================================================================


@pytest.mark.asyncio
async def test_build_event_collects_request_signals(settings, make_ctx) -> None:
    store = FakeLinkStore()
    fingerprinter = RequestFingerprinter(settings, store)
    record = ShortLinkRecord(
        destination="https://dst.example",
        link_id="link-1",
        user_id="user-1",
        utm_params={"utm_source": "stored", "utm_medium": "email"},
    )
    ctx = make_ctx(
        path="/abc?utm_source=query",
        headers={
            "cf-ray": "8a1b2c3d4e5f6789-AMS",
            "cf-ipcountry": "NL",
            "cf-ipcity": "Amsterdam",
            "cf-timezone": "Europe/Amsterdam",
            "accept-language": "nl-NL, en;q=0.8",
            "referer": "https://news.example/post",
        },
    )

    event = await fingerprinter.build(ctx, "https://dst.example", "abc", 12.5, record, variant_id="v1")

    assert event.idempotency_key == "8a1b2c3d4e5f6789-AMS"
    assert event.request_id == "8a1b2c3d4e5f6789-AMS"
    assert event.short_url == "https://sho.rt/abc"
    assert event.link_id == "link-1"
    assert event.user_id == "user-1"
    assert event.redirect_status == 302
    assert event.worker_datacenter == "AMS"
    assert event.worker_version == "test"
    assert event.country == "NL"
    assert event.city == "Amsterdam"
    assert event.language == "nl-NL"
    assert event.device_type == DeviceType.DESKTOP
    assert event.browser == "Chrome"
    assert event.os == "Windows"
    assert event.utm_source == "query"
    assert event.utm_medium == "email"
    assert event.utm_campaign is None
    assert event.is_bot is False
    assert event.variant_id == "v1"
    assert event.first_click_of_session is True


@pytest.mark.asyncio
async def test_first_click_is_only_true_once_per_session(settings, make_ctx) -> None:
    fingerprinter = RequestFingerprinter(settings, FakeLinkStore())

    first = await fingerprinter.build(make_ctx(), "https://dst.example", "abc", 1.0)
    second = await fingerprinter.build(make_ctx(), "https://dst.example", "abc", 1.0)
    other_slug = await fingerprinter.build(make_ctx(path="/xyz"), "https://dst.example", "xyz", 1.0)

    assert first.first_click_of_session is True
    assert second.first_click_of_session is False
    assert other_slug.first_click_of_session is True


@pytest.mark.asyncio
async def test_first_click_defaults_to_true_when_store_fails(settings, make_ctx) -> None:
    store = FakeLinkStore()
    store.fail_markers = True
    fingerprinter = RequestFingerprinter(settings, store)

    event = await fingerprinter.build(make_ctx(), "https://dst.example", "abc", 1.0)

    assert event.first_click_of_session is True


@pytest.mark.asyncio
async def test_build_event_without_user_agent(settings, make_ctx) -> None:
    fingerprinter = RequestFingerprinter(settings)
    event = await fingerprinter.build(make_ctx(headers={"user-agent": ""}), "https://dst.example", "abc", 1.0)

    assert event.device_type is None
    assert event.browser is None
    assert event.os is None
    assert event.is_bot is False
    assert event.worker_datacenter == "TST"
