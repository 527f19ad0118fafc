"""
Fuzzy matching of database identifiers (schema and table names).
"""
import re
from typing import Dict, Optional

from rapidfuzz.fuzz import partial_ratio, ratio

MATCHING_CONFIG = {
    'similarity_threshold': 0.6,  # Minimum score to count as a match
    'min_length_for_partial': 3,  # Shorter queries only compare whole names
}

_SEPARATORS = re.compile(r'[\s_\-\.]+')
_IDENTIFIER = re.compile(r'^[A-Za-z_][A-Za-z0-9_$]*$')


def normalize_identifier(name: str) -> str:
    """
    Lowercase a table or schema name and collapse separators to single spaces.

    ``cm_opt_POH-policyhdr`` becomes ``cm opt poh policyhdr``.
    """
    if not name:
        return ""
    return _SEPARATORS.sub(' ', name.lower()).strip()


def is_valid_identifier(name: str) -> bool:
    """True for plain, unquoted SQL identifiers."""
    return bool(name) and bool(_IDENTIFIER.match(name))


def quote_identifier(name: str) -> str:
    """Double-quote a validated identifier for interpolation into SQL."""
    if not is_valid_identifier(name):
        raise ValueError(f"Invalid identifier: {name!r}")
    return f'"{name}"'


def escape_identifier(name: str) -> str:
    """Quote a name read from the catalog, doubling any embedded quotes."""
    return '"' + name.replace('"', '""') + '"'


def calculate_similarity(query: str, candidate: str) -> float:
    """
    Similarity between 0 and 1 of a query against an identifier.

    Queries long enough for substring matching also score by the best
    matching window, so ``policy`` ranks ``cm_opt_poh_policyhdr_s`` highly.
    """
    if not query and not candidate:
        return 1.0
    if not query or not candidate:
        return 0.0

    score = ratio(query, candidate)
    if len(query) >= MATCHING_CONFIG['min_length_for_partial']:
        score = max(score, partial_ratio(query, candidate))
    return score / 100.0


def identifiers_match(query: str, candidate: str, threshold: Optional[float] = None) -> Dict:
    """
    Compare a search query with an identifier after normalization.

    Returns:
        Dict with ``match``, ``similarity``, ``normalized_query``,
        ``normalized_candidate`` and ``exact_match``.
    """
    if threshold is None:
        threshold = MATCHING_CONFIG['similarity_threshold']

    norm_query = normalize_identifier(query)
    norm_candidate = normalize_identifier(candidate)

    if norm_query == norm_candidate:
        similarity = 1.0
    else:
        similarity = calculate_similarity(norm_query, norm_candidate)

    return {
        'match': similarity >= threshold,
        'similarity': similarity,
        'normalized_query': norm_query,
        'normalized_candidate': norm_candidate,
        'exact_match': norm_query == norm_candidate,
    }
