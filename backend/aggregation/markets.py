"""
Market categorisation and cross-provider odds merging.
"""
from __future__ import annotations

from typing import Iterable, Optional

from shared.models.domain import AggregatedOdds, MarketOffer
from shared.models.enums import MarketCategory

_CATEGORY_ALIASES: dict[MarketCategory, tuple[str, ...]] = {
    MarketCategory.MONEY_LINE: ("money line", "moneyline", "money_line", "1x2", "match winner", "h2h", "winner"),
    MarketCategory.TOTALS: ("over/under", "over_under", "totals", "total", "goals over/under"),
    MarketCategory.SPREADS: ("handicap", "spread", "spreads", "asian handicap", "point spread", "run line", "puck line"),
    MarketCategory.PLAYER_PROPS: ("player props", "player_props", "player"),
}

_SELECTION_ALIASES = {
    "1": "home",
    "home": "home",
    "2": "away",
    "away": "away",
    "x": "draw",
    "draw": "draw",
    "tie": "draw",
    "over": "over",
    "o": "over",
    "under": "under",
    "u": "under",
}

_SWAPPED = {"home": "away", "away": "home"}


def categorize_market(market_type: str) -> MarketCategory:
    key = market_type.strip().lower()
    for category, aliases in _CATEGORY_ALIASES.items():
        if key in aliases:
            return category
    if key.startswith("player"):
        return MarketCategory.PLAYER_PROPS
    return MarketCategory.OTHER


def normalize_selection(selection: str) -> str:
    key = selection.strip().lower()
    return _SELECTION_ALIASES.get(key, key)


def _quote_key(odds: AggregatedOdds) -> tuple[str, Optional[float], str, float]:
    return (odds.selection, odds.line, odds.period, round(odds.price, 3))


def merge_offers(
    markets: dict[MarketCategory, list[AggregatedOdds]],
    provider: str,
    offers: Iterable[MarketOffer],
    allowed: Optional[set[MarketCategory]] = None,
    swap_sides: bool = False,
) -> None:
    """
    Fold one provider's offers into ``markets`` in place.

    Identical quotes collapse into one entry listing every provider that
    offered them. When ``allowed`` is given, offers outside those categories
    are dropped. ``swap_sides`` flips home/away selections for a provider
    that lists the fixture the other way round.
    """
    for offer in offers:
        category = categorize_market(offer.market_type)
        if allowed is not None and category not in allowed:
            continue
        selection = normalize_selection(offer.selection)
        if swap_sides:
            selection = _SWAPPED.get(selection, selection)
        odds = AggregatedOdds(
            category=category,
            selection=selection,
            price=offer.price,
            line=offer.line,
            period=offer.period.strip().lower() or "game",
            providers=[provider],
        )
        bucket = markets.setdefault(category, [])
        key = _quote_key(odds)
        for existing in bucket:
            if _quote_key(existing) == key:
                if provider not in existing.providers:
                    existing.providers.append(provider)
                break
        else:
            bucket.append(odds)


def categories_of(offers: Iterable[MarketOffer]) -> set[MarketCategory]:
    return {categorize_market(offer.market_type) for offer in offers}
