from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Sequence

from atendimento.schemas.catalog import CatalogEntry
from atendimento.schemas.conversation import CartItem
from atendimento.services.text_normalization import is_near_match, normalize, singularize

SCORE_EXACT = 1000
SCORE_CONTAINS = 800
SCORE_OVERLAP = 500
OVERLAP_WEIGHT = 130
MIN_OVERLAP_RATIO = 0.6
RESOLVE_THRESHOLD = 560


@dataclass(frozen=True)
class ResolvedLine:
    entry: CatalogEntry
    quantity: int
    requested_name: str

    @property
    def line_total_cents(self) -> int:
        return self.entry.unit_price_cents * self.quantity


@dataclass
class ResolutionResult:
    resolved: list[ResolvedLine] = field(default_factory=list)
    unresolved: list[str] = field(default_factory=list)


def _overlap_ratio(entry_tokens: Sequence[str], query_tokens: Sequence[str]) -> float:
    query_set = set(query_tokens)
    overlap = sum(1 for token in entry_tokens if token in query_set)
    return overlap / max(len(entry_tokens), len(query_tokens), 1)


def _fuzzy_ratio(entry_tokens: Sequence[str], query_tokens: Sequence[str]) -> float:
    hits = sum(
        1 for token in entry_tokens if any(is_near_match(token, other) for other in query_tokens)
    )
    return hits / max(len(entry_tokens), len(query_tokens), 1)


def score_match(normalized_query: str, normalized_name: str) -> int:
    if not normalized_query or not normalized_name:
        return 0
    if normalized_query == normalized_name:
        return SCORE_EXACT
    if normalized_query in normalized_name or normalized_name in normalized_query:
        return SCORE_CONTAINS + min(len(normalized_query), len(normalized_name))

    query_tokens = normalized_query.split(" ")
    name_tokens = normalized_name.split(" ")
    canonical_query = [singularize(token) for token in query_tokens]
    canonical_name = [singularize(token) for token in name_tokens]

    ratio = max(
        _overlap_ratio(name_tokens, query_tokens),
        _overlap_ratio(canonical_name, canonical_query),
        _fuzzy_ratio(canonical_name, canonical_query),
    )
    if ratio < MIN_OVERLAP_RATIO:
        return 0
    return SCORE_OVERLAP + int(ratio * OVERLAP_WEIGHT + 0.5)


def resolve_with_score(item_name: str, catalog: Iterable[CatalogEntry]) -> tuple[CatalogEntry | None, int]:
    target = normalize(item_name)
    if not target:
        return None, 0

    best: CatalogEntry | None = None
    best_score = 0
    for entry in catalog:
        score = score_match(target, normalize(entry.name))
        if score > best_score:
            best = entry
            best_score = score

    if best_score < RESOLVE_THRESHOLD:
        return None, best_score
    return best, best_score


def resolve(item_name: str, catalog: Iterable[CatalogEntry]) -> CatalogEntry | None:
    entry, _score = resolve_with_score(item_name, catalog)
    return entry


def resolve_batch(items: Iterable[CartItem], catalog: Sequence[CatalogEntry]) -> ResolutionResult:
    """Resolve cada linha do carrinho contra o cardápio.

    Linhas que já carregam um código presente no cardápio são aceitas sem
    nova busca por nome.
    """
    by_code = {entry.code: entry for entry in catalog}
    result = ResolutionResult()
    for item in items:
        entry = by_code.get(item.catalog_code) if item.catalog_code else None
        if entry is None:
            entry = resolve(item.name, catalog)
        if entry is None:
            result.unresolved.append(item.name)
            continue
        result.resolved.append(ResolvedLine(entry=entry, quantity=item.quantity, requested_name=item.name))
    return result
