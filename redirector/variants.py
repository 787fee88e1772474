"""Experiment variant selection for A/B split links.

Two strategies are available:

- **weighted**: a fresh cryptographically random draw per request. Used on
  the store (cache-miss) path when the experiment asks for it.
- **deterministic**: a bucket derived from the session fingerprint, so the
  same visitor always lands on the same variant. Used whenever the
  experiment asks for it and always on the edge-cache hit path.

Flow Diagram — resolve_experiment()
===================================
::
    ┌──────────────────┐
    │ config enabled & │── NO ──► None (canonical destination)
    │ has variants?    │
    └────────┬─────────┘
             │ YES
             ▼
    ┌──────────────────┐
    │ deterministic or │── YES ─► select_deterministic_variant()
    │ forced?          │
    └────────┬─────────┘
             │ NO
             ▼
      select_weighted_variant()

UTM handling lives here too because variant URLs must carry the same UTM
parameters as the canonical destination.
"""

import hashlib
import secrets
from collections.abc import Mapping, Sequence
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from redirector.enums import DistributionMode
from redirector.schemas import ExperimentConfig, Variant, VariantChoice

__all__ = [
    "UTM_KEYS",
    "string_hash",
    "select_weighted_variant",
    "select_deterministic_variant",
    "resolve_experiment",
    "session_fingerprint",
    "merge_utm_params",
    "extract_utm_params",
]

UTM_KEYS = ("utm_source", "utm_medium", "utm_campaign", "utm_term", "utm_content")

_INT32_RANGE = 1 << 32
_INT32_MAX = (1 << 31) - 1


def string_hash(value: str) -> int:
    """32-bit signed ``h = (h << 5) - h + ord(c)`` over the characters of ``value``."""
    h = 0
    for char in value:
        h = ((h << 5) - h + ord(char)) % _INT32_RANGE
    if h > _INT32_MAX:
        h -= _INT32_RANGE
    return h


def select_weighted_variant(variants: Sequence[Variant]) -> Variant | None:
    if not variants:
        return None

    total_weight = sum(variant.weight for variant in variants)
    if total_weight <= 0:
        return variants[0]

    threshold = (secrets.randbits(32) / _INT32_RANGE) * total_weight
    for variant in variants:
        threshold -= variant.weight
        if threshold <= 0:
            return variant

    return variants[-1]


def select_deterministic_variant(variants: Sequence[Variant], session_id: str) -> Variant | None:
    if not variants:
        return None

    total_weight = sum(variant.weight for variant in variants)
    if total_weight <= 0:
        return variants[0]

    bucket = abs(string_hash(session_id)) % total_weight
    threshold = 0.0
    for variant in variants:
        threshold += variant.weight
        if bucket < threshold:
            return variant

    return variants[-1]


def resolve_experiment(
    config: ExperimentConfig | None,
    session_id: str,
    force_deterministic: bool = False,
) -> VariantChoice | None:
    """Pick the variant for this visitor, or ``None`` to keep the canonical URL."""
    if config is None or not config.is_active:
        return None

    if force_deterministic or config.distribution is DistributionMode.DETERMINISTIC:
        variant = select_deterministic_variant(config.variants, session_id)
    else:
        variant = select_weighted_variant(config.variants)

    if variant is None:
        return None
    return VariantChoice(variant_id=variant.id, url=variant.url)


def session_fingerprint(ip_hash: str, user_agent: str, length: int = 32) -> str:
    digest = hashlib.sha256(f"{ip_hash}{user_agent}".encode("utf-8")).hexdigest()
    return digest[:length]


def merge_utm_params(url: str, params: Mapping[str, str]) -> str:
    """Append UTM parameters to ``url`` unless the query already names them."""
    utm = {key: value for key, value in params.items() if key in UTM_KEYS and value}
    if not utm:
        return url

    parts = urlsplit(url)
    present = {key for key, _ in parse_qsl(parts.query, keep_blank_values=True)}
    missing = [(key, value) for key, value in utm.items() if key not in present]
    if not missing:
        return url

    # existing query text is kept verbatim
    query = "&".join(filter(None, [parts.query, urlencode(missing)]))
    return urlunsplit(parts._replace(query=query))


def extract_utm_params(url: str) -> dict[str, str]:
    query = parse_qsl(urlsplit(url).query, keep_blank_values=False)
    return {key: value for key, value in query if key in UTM_KEYS}
