"""Perp <-> spot symbol mapping for Hyperliquid.

Perps are addressed by coin name (``BTC``). Spot pairs are addressed by
``PURR/USDC`` for the first canonical pair and ``@<index>`` for every other
pair. Bridged assets carry a ``U`` prefix on the spot side (``UBTC``,
``UETH``, ``USOL``), and ``k``-prefixed perps (``kPEPE``) are 1000x contracts
with no 1:1 spot counterpart.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional

from .types import LegSpec, PairSpec

logger = logging.getLogger(__name__)

QUOTE_TOKEN = "USDC"
BRIDGED_PREFIX = "U"


def is_kilo_contract(perp_name: str) -> bool:
    return len(perp_name) > 1 and perp_name[0] == "k" and perp_name[1].isupper()


def spot_token_candidates(perp_name: str) -> List[str]:
    if is_kilo_contract(perp_name):
        return []
    return [perp_name, BRIDGED_PREFIX + perp_name]


def spot_order_name(pair: Dict[str, Any]) -> str:
    index = int(pair.get("index", 0))
    if index == 0 and "/" in pair.get("name", ""):
        return pair["name"]
    return f"@{index}"


def match_spot_token(token: str, perp_names: Iterable[str]) -> Optional[str]:
    """Spot token name -> perp name hedging it, if any."""
    names = set(perp_names)
    if token in names:
        return token
    if token.startswith(BRIDGED_PREFIX) and token[len(BRIDGED_PREFIX):] in names:
        return token[len(BRIDGED_PREFIX):]
    return None


def _perp_entry(perp_meta: Dict[str, Any], symbol: str) -> Optional[Dict[str, Any]]:
    for asset in perp_meta.get("universe", []):
        if asset.get("name") == symbol and not asset.get("isDelisted", False):
            return asset
    return None


def resolve_pair(
    symbol: str,
    perp_meta: Dict[str, Any],
    spot_meta: Dict[str, Any],
) -> Optional[PairSpec]:
    perp = _perp_entry(perp_meta, symbol)
    if perp is None:
        logger.warning("perp %s not listed", symbol)
        return None

    tokens_by_name = {t["name"]: t for t in spot_meta.get("tokens", [])}
    quote = tokens_by_name.get(QUOTE_TOKEN)
    if quote is None:
        return None

    for candidate in spot_token_candidates(symbol):
        token = tokens_by_name.get(candidate)
        if token is None:
            continue
        for pair in spot_meta.get("universe", []):
            base_idx, quote_idx = pair.get("tokens", [None, None])[:2]
            if base_idx == token["index"] and quote_idx == quote["index"]:
                return PairSpec(
                    symbol=symbol,
                    perp=LegSpec(name=symbol, sz_decimals=int(perp.get("szDecimals", 0)), is_spot=False),
                    spot=LegSpec(
                        name=spot_order_name(pair),
                        sz_decimals=int(token.get("szDecimals", 0)),
                        is_spot=True,
                    ),
                    spot_token=candidate,
                )

    logger.warning("no USDC spot pair for %s", symbol)
    return None


def resolve_pairs(
    symbols: Iterable[str],
    perp_meta: Dict[str, Any],
    spot_meta: Dict[str, Any],
) -> Dict[str, PairSpec]:
    out: Dict[str, PairSpec] = {}
    for symbol in symbols:
        pair = resolve_pair(symbol, perp_meta, spot_meta)
        if pair is not None:
            out[symbol] = pair
    return out
