"""
Symbol resolution: user symbol + optional asset-type hint -> RoutingPlan.

Normalisation, applied in order:

    1. uppercase, drop an ``EXCHANGE:`` prefix (kept as a routing hint)
    2. strip ``/``, ``-``, ``_`` and whitespace
    3. strip trailing ``PERP`` / ``USDT`` / ``USDC`` / ``USD`` (repeatedly)
    4. apply the alias table (``BITCOIN`` -> ``BTC``, ``LAYERZERO`` -> ``ZRO``)

The result is the CanonicalKey.  Venue tables, aliases and exchange prefixes
are loaded from ``data/symbol_tables.json``.

Usage::

    from market_feed.core.symbols import resolve

    plan = resolve("COINBASE:BTCUSD")
    plan.primary            # Venue.COINBASE
    plan.native_id(plan.primary)  # "BTC-USD"
"""

from __future__ import annotations

import json
import logging
import re
from functools import lru_cache
from pathlib import Path
from typing import NamedTuple, Optional

from market_feed.core.models import AssetType, RoutingPlan, Venue

logger = logging.getLogger(__name__)

_TABLES_PATH = Path(__file__).parent.parent / "data" / "symbol_tables.json"

_QUOTE_SUFFIXES = ("USDT", "USDC", "USD")
_PERP_SUFFIX = "PERP"
_STRIP_RE = re.compile(r"[\s/\-_]")
_EQUITY_RE = re.compile(r"^[A-Z]{1,5}(\.[A-Z]{1,2})?$")


def _load_tables(path: Path = _TABLES_PATH) -> dict:
    with open(path, "r") as f:
        return json.load(f)


_TABLES = _load_tables()

CB_PRODUCTS: dict[str, str] = _TABLES["coinbase_products"]
PH_PRODUCTS: dict[str, str] = _TABLES["phemex_products"]
CG_IDS: dict[str, str] = _TABLES["coingecko_ids"]
ALIASES: dict[str, str] = _TABLES["aliases"]
EQUITY_EXCHANGES: frozenset[str] = frozenset(_TABLES["equity_exchanges"])
CRYPTO_EXCHANGES: dict[str, Optional[str]] = _TABLES["crypto_exchanges"]


class ParsedSymbol(NamedTuple):
    key: str
    exchange: Optional[str]   # uppercase prefix before ':' if any
    quoted: bool              # a USD/USDT/USDC suffix was stripped
    perp: bool                # a PERP suffix was stripped


def parse_symbol(symbol: str) -> ParsedSymbol:
    """Split *symbol* into its CanonicalKey and the hints carried by its spelling."""
    text = (symbol or "").strip().upper()
    exchange = None
    if ":" in text:
        parts = text.split(":")
        exchange = parts[0].strip() or None
        text = parts[-1]
    raw = _STRIP_RE.sub("", text)

    quoted = perp = False
    stripped = True
    while stripped and raw:
        stripped = False
        if raw.endswith(_PERP_SUFFIX):
            raw = raw[: -len(_PERP_SUFFIX)]
            perp = stripped = True
            continue
        for suffix in _QUOTE_SUFFIXES:
            if raw.endswith(suffix):
                raw = raw[: -len(suffix)]
                quoted = stripped = True
                break

    key = ALIASES.get(raw, raw)
    return ParsedSymbol(key=key, exchange=exchange, quoted=quoted, perp=perp)


def canonical_key(symbol: str) -> str:
    """Return the CanonicalKey for *symbol* (empty string if nothing remains)."""
    return parse_symbol(symbol).key


def is_crypto_key(key: str) -> bool:
    return key in CB_PRODUCTS or key in PH_PRODUCTS or key in CG_IDS


def _coerce_type(asset_type) -> Optional[AssetType]:
    if asset_type is None or isinstance(asset_type, AssetType):
        return asset_type
    try:
        return AssetType(str(asset_type).strip().lower())
    except ValueError:
        logger.debug(f"Ignoring unknown asset type {asset_type!r}")
        return None


def _classify(parsed: ParsedSymbol) -> AssetType:
    """Infer an asset type for a symbol given without one."""
    if parsed.exchange in EQUITY_EXCHANGES:
        return AssetType.EQUITY
    if parsed.exchange in CRYPTO_EXCHANGES:
        return AssetType.CRYPTO_PERP if parsed.exchange == "PHEMEX" or parsed.perp else AssetType.CRYPTO_SPOT
    if parsed.perp:
        return AssetType.CRYPTO_PERP
    if parsed.quoted or is_crypto_key(parsed.key):
        return AssetType.CRYPTO_SPOT
    if _EQUITY_RE.match(parsed.key):
        return AssetType.EQUITY
    return AssetType.CRYPTO_SPOT


def _native_id(venue: Venue, key: str) -> str:
    if venue == Venue.COINBASE:
        return CB_PRODUCTS.get(key) or f"{key}-USD"
    if venue == Venue.PHEMEX:
        return PH_PRODUCTS.get(key) or f"{key}USDT"
    if venue == Venue.COINGECKO:
        return CG_IDS.get(key) or key.lower()
    return key


def _route(key: str, asset_type: AssetType, hint: Optional[Venue]) -> tuple[Venue, list[Venue]]:
    if asset_type == AssetType.EQUITY:
        return Venue.YAHOO, []

    if asset_type == AssetType.CRYPTO_PERP:
        primary = Venue.PHEMEX if key in PH_PRODUCTS else Venue.COINBASE
        candidates = [Venue.COINGECKO]
    else:
        primary = Venue.COINBASE if key in CB_PRODUCTS else Venue.COINGECKO
        candidates = [Venue.PHEMEX, Venue.COINGECKO]
    fallbacks = [v for v in candidates if v != primary]

    if hint is not None and hint != primary:
        fallbacks = [v for v in [primary] + fallbacks if v != hint]
        primary = hint
    return primary, fallbacks


@lru_cache(maxsize=2048)
def resolve(symbol: str, asset_type: Optional[AssetType | str] = None) -> Optional[RoutingPlan]:
    """
    Map a user symbol to a RoutingPlan, or ``None`` when nothing is left
    after normalisation.

    Pure and cached: equal inputs always yield equal plans.
    """
    if not isinstance(symbol, str):
        return None
    parsed = parse_symbol(symbol)
    if not parsed.key:
        return None

    kind = _coerce_type(asset_type) or _classify(parsed)

    hint = None
    venue_name = CRYPTO_EXCHANGES.get(parsed.exchange) if parsed.exchange else None
    if venue_name and kind != AssetType.EQUITY:
        hint = Venue(venue_name)

    primary, fallbacks = _route(parsed.key, kind, hint)
    venues = [primary] + fallbacks
    return RoutingPlan(
        key=parsed.key,
        primary=primary,
        fallbacks=tuple(fallbacks),
        native_ids={v: _native_id(v, parsed.key) for v in venues},
        asset_type=kind,
        venue_hint=hint,
    )
