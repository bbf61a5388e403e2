"""
Entity extraction from raw card questions.

Patterns are applied in a fixed priority order, and every stage claims the
characters it matched so later, more generic stages cannot reinterpret them:

1. Balance / fee status phrases ("zero balance", "no annual fee")
2. Lexicon values (networks, issuers, card types), multi-word names first
3. Field phrases, longest first (see field_map)
4. Operator + value comparisons ("balance over 5000", "between 10 and 20")
5. Aggregation verbs, distinct markers, group-by, sort and limit hints

extract() never raises: text with nothing recognizable yields an empty bag.
"""

import re
from dataclasses import replace
from datetime import date, datetime
from typing import Iterator

import structlog

from wallet_query.core.entities import (
    AggregationVerb,
    ComparisonEntity,
    ComparisonValue,
    DistinctRequest,
    EntityBag,
    LogicalConnector,
    Operator,
    SortDirection,
    SortHint,
    ValueKind,
)
from wallet_query.core.field_map import FieldMention, find_field_mentions

logger = structlog.get_logger()

NETWORK_TOKEN = "card network"
ISSUER_TOKEN = "issuer"
CARD_TYPE_TOKEN = "card type"

# term -> (field token, canonical values). A term that names both a network
# and an issuer (American Express, Discover) is listed once, as a network.
LEXICON: dict[str, tuple[str, tuple[str, ...]]] = {
    "american express": (NETWORK_TOKEN, ("Amex", "American Express")),
    "amex": (NETWORK_TOKEN, ("Amex", "American Express")),
    "master card": (NETWORK_TOKEN, ("Mastercard",)),
    "mastercard": (NETWORK_TOKEN, ("Mastercard",)),
    "visa": (NETWORK_TOKEN, ("Visa",)),
    "discover": (NETWORK_TOKEN, ("Discover",)),
    "bank of america": (ISSUER_TOKEN, ("Bank of America",)),
    "capital one": (ISSUER_TOKEN, ("Capital One",)),
    "wells fargo": (ISSUER_TOKEN, ("Wells Fargo",)),
    "us bank": (ISSUER_TOKEN, ("US Bank",)),
    "citibank": (ISSUER_TOKEN, ("Citi",)),
    "chase": (ISSUER_TOKEN, ("Chase",)),
    "citi": (ISSUER_TOKEN, ("Citi",)),
    "barclays": (ISSUER_TOKEN, ("Barclays",)),
    "synchrony": (ISSUER_TOKEN, ("Synchrony",)),
    "debit": (CARD_TYPE_TOKEN, ("Debit",)),
    "secured": (CARD_TYPE_TOKEN, ("Secured",)),
    "business": (CARD_TYPE_TOKEN, ("Business",)),
    "student": (CARD_TYPE_TOKEN, ("Student",)),
    "charge": (CARD_TYPE_TOKEN, ("Charge",)),
}

_LEXICON_PATTERNS = [
    (re.compile(rf"\b{re.escape(term)}\b"), term)
    for term in sorted(LEXICON, key=lambda t: (-len(t.split()), -len(t)))
]

_NEGATION = re.compile(r"(?:\bnot|\bno|\bexcept(?:\s+for)?|\bexcluding|\bother\s+than|\bbesides|\bnon)[\s-]*$")

_MONTHS = (
    "january|february|march|april|may|june|july|august|september|october|november|december"
    "|jan|feb|mar|jun|jul|aug|sept|sep|oct|nov|dec"
)
DATE_RE = rf"(?:\d{{4}}-\d{{2}}-\d{{2}}|\d{{1,2}}/\d{{1,2}}/\d{{4}}|(?:{_MONTHS})\.?\s+\d{{1,2}}(?:st|nd|rd|th)?(?:,?\s+\d{{4}})?)"
NUMBER_RE = r"\$?\s?\d[\d,]*(?:\.\d+)?(?:\s?%|\s?percent\b|k\b|\s?dollars\b)?"
VALUE_RE = rf"(?:{DATE_RE}|{NUMBER_RE})"

# Longest operator phrases first.
OPERATOR_PHRASES: list[tuple[str, Operator]] = [
    ("greater than or equal to", Operator.GE),
    ("less than or equal to", Operator.LE),
    ("not equal to", Operator.NE),
    ("on or before", Operator.LE),
    ("on or after", Operator.GE),
    ("no less than", Operator.GE),
    ("no more than", Operator.LE),
    ("greater than", Operator.GT),
    ("more than", Operator.GT),
    ("higher than", Operator.GT),
    ("larger than", Operator.GT),
    ("bigger than", Operator.GT),
    ("less than", Operator.LT),
    ("fewer than", Operator.LT),
    ("lower than", Operator.LT),
    ("smaller than", Operator.LT),
    ("at least", Operator.GE),
    ("at most", Operator.LE),
    ("equal to", Operator.EQ),
    ("exceeding", Operator.GT),
    ("equals", Operator.EQ),
    ("exactly", Operator.EQ),
    ("above", Operator.GT),
    ("below", Operator.LT),
    ("under", Operator.LT),
    ("over", Operator.GT),
    ("before", Operator.LT),
    ("after", Operator.GT),
    ("by", Operator.LE),  # dates only: "due by nov 5"
]
_OPERATOR_LOOKUP = dict(OPERATOR_PHRASES)
_OPERATOR_ALT = "|".join(re.escape(phrase) for phrase, _ in OPERATOR_PHRASES)

_COMPARISON_RE = re.compile(rf"\b(?P<op>{_OPERATOR_ALT})\s+(?:(?:a|an|the)\s+)?(?P<value>{VALUE_RE})")
_BETWEEN_RE = re.compile(rf"\bbetween\s+(?P<low>{VALUE_RE})\s+and\s+(?P<high>{VALUE_RE})")
_POSTFIX_RE = re.compile(
    rf"(?P<value>{NUMBER_RE})\s+or\s+(?P<direction>more|greater|higher|above|less|fewer|lower|below)\b"
)
_FIELD_VALUE_RE = re.compile(rf"\s+(?:of|is|=|at)\s+(?:exactly\s+)?(?P<value>{NUMBER_RE})")

_ZERO_BALANCE_RE = re.compile(r"\b(?:zero|no)\s+balances?\b|\$0\s+balances?\b|\bpaid\s+off\b")
_WITH_BALANCE_RE = re.compile(
    r"\b(?:with|having|that\s+have|that\s+has|have|has|carrying|carry)\s+(?:a\s+)?balances?\b"
    r"(?!\s+(?:of|is|over|above|under|below|greater|more|less|at|between|equal|exactly|exceeding|fewer|higher|lower))"
)
_NO_FEE_RE = re.compile(r"\bno\s+(?:annual\s+)?fees?\b")

_VERB_PHRASES: list[tuple[str, AggregationVerb]] = [
    ("total number of", AggregationVerb.COUNT),
    ("how many", AggregationVerb.COUNT),
    ("number of", AggregationVerb.COUNT),
    ("how much", AggregationVerb.SUM),
    ("added up", AggregationVerb.SUM),
    ("add up", AggregationVerb.SUM),
    ("combined", AggregationVerb.SUM),
    ("average", AggregationVerb.AVG),
    ("minimum", AggregationVerb.MIN),
    ("maximum", AggregationVerb.MAX),
    ("total", AggregationVerb.SUM),
    ("count", AggregationVerb.COUNT),
    ("sum", AggregationVerb.SUM),
    ("mean", AggregationVerb.AVG),
    ("avg", AggregationVerb.AVG),
    ("min", AggregationVerb.MIN),
    ("max", AggregationVerb.MAX),
]
_VERB_LOOKUP = dict(_VERB_PHRASES)
_VERB_RE = re.compile(r"\b(?:" + "|".join(re.escape(p) for p, _ in _VERB_PHRASES) + r")\b")
_WEAK_VERBS = {"how much"}

_DISTINCT_RE = re.compile(r"\b(?:different|various|distinct|unique|breakdown|distribution|variety\s+of)\b")
_WHICH_FIELD_RE = re.compile(
    r"\b(?:what|which)\s+(?:kinds?\s+of\s+)?(?P<target>issuers|banks|networks|card\s+networks|card\s+types|types)"
    r"\s+(?:do|are|have|does)\b"
)
_NAMES_ONLY_RE = re.compile(r"\b(?:names\s+only|just\s+list|just\s+the\s+names|only\s+the\s+names)\b")

_GROUP_RE = re.compile(
    r"\b(?:grouped\s+by|group\s+by|broken\s+down\s+by|split\s+by|for\s+each|for\s+every|by|per)\s+"
    r"(?:the\s+|each\s+|my\s+)?"
)
_SORT_RE = re.compile(r"\b(?:sort|sorted|order|ordered|rank|ranked)\s+(?:them\s+|it\s+|these\s+)?by\s+")
_SORT_WORDS = {"sort", "sorted", "order", "ordered", "rank", "ranked"}
_DESCENDING_RE = re.compile(r"\b(?:desc|descending|highest\s+first|largest\s+first|high\s+to\s+low|most\s+first)\b")

SUPERLATIVES: dict[str, SortDirection] = {
    "highest": SortDirection.DESC,
    "largest": SortDirection.DESC,
    "biggest": SortDirection.DESC,
    "greatest": SortDirection.DESC,
    "most": SortDirection.DESC,
    "longest": SortDirection.DESC,
    "lowest": SortDirection.ASC,
    "smallest": SortDirection.ASC,
    "least": SortDirection.ASC,
    "shortest": SortDirection.ASC,
    "cheapest": SortDirection.ASC,
    "fewest": SortDirection.ASC,
}
_SUPERLATIVE_RE = re.compile(r"\b(?:" + "|".join(SUPERLATIVES) + r")\b")
_TOP_N_RE = re.compile(r"\b(?P<edge>top|first|bottom|last)\s+(?P<n>\d+)\b")
_N_SUPERLATIVE_RE = re.compile(r"\b(?P<n>\d+)\s+(?:cards?\s+with\s+the\s+)?(?:" + "|".join(SUPERLATIVES) + r")\b")

_FILLER_WORDS = {
    "is", "are", "was", "be", "been", "of", "that", "which", "with", "a", "an", "the", "at",
    "currently", "has", "have", "having", "its", "their", "my", "to", "set", "on", "for",
    "where", "whose", "any", "total",
}
_RECORD_NOUNS = {"card", "cards", "account", "accounts", "ones", "one", "them", "those", "these", "wallet", "credit"}
_MERGE_GAP_WORDS = {"and", "or", "nor", "either", "neither", "cards", "card"}

_DATE_FORMATS = ["%Y-%m-%d", "%m/%d/%Y", "%B %d %Y", "%b %d %Y"]
_DATE_FORMATS_NO_YEAR = ["%B %d", "%b %d"]


def normalize_text(text: str) -> str:
    """Lowercase, drop sentence punctuation and collapse whitespace."""
    cleaned = re.sub(r"[?!;\"]", " ", text.lower())
    return " ".join(cleaned.split())


def parse_number(raw: str) -> ComparisonValue | None:
    """Parse "$5,000", "5k", "20%" or "25" into a typed number value."""
    text = raw.strip().rstrip(",").strip()
    kind = ValueKind.NUMBER
    if "$" in text or text.endswith("dollars"):
        kind = ValueKind.MONEY
    elif text.endswith("%") or text.endswith("percent"):
        kind = ValueKind.PERCENT
    multiplier = 1
    digits = re.sub(r"(?:dollars|percent|%|\$|,|\s)", "", text)
    if digits.endswith("k"):
        multiplier = 1000
        digits = digits[:-1]
        kind = ValueKind.MONEY
    try:
        number = float(digits) * multiplier
    except ValueError:
        return None
    value: int | float = int(number) if number.is_integer() else number
    return ComparisonValue(kind=kind, value=value, raw=raw.strip())


class EntityExtractor:
    """
    Deterministic extractor of typed entities from card questions.

    Args:
        reference_year: Year assumed for dates written without one
            ("before nov 5"). Fixed per instance so extraction stays a pure
            function of the text.
    """

    def __init__(self, reference_year: int | None = None):
        self.reference_year = reference_year or date.today().year

    def extract(self, text: str) -> EntityBag:
        """
        Extract entities from raw text.

        Returns:
            EntityBag, empty when nothing in the text is recognized
        """
        bag = EntityBag()
        if not text or not text.strip():
            return bag

        normalized = normalize_text(text)
        taken = [False] * len(normalized)

        comparisons = self._extract_status_phrases(normalized, taken)
        comparisons.extend(self._extract_lexicon_values(normalized, taken))
        mentions = find_field_mentions(normalized, taken)
        used_mentions: set[int] = set()
        comparisons.extend(self._extract_comparisons(normalized, taken, mentions, used_mentions, comparisons))

        comparisons.sort(key=lambda c: c.start)
        comparisons = self._merge_same_field_values(normalized, comparisons)
        comparisons, bag.logical_connector = self._assign_connectors(normalized, comparisons)
        bag.comparisons = comparisons
        bag.field_tokens = [m.token for m in mentions]

        group_mention_start = self._extract_group_by(normalized, taken, mentions, bag)
        if group_mention_start is not None:
            used_mentions.add(group_mention_start)

        self._extract_aggregation(normalized, taken, mentions, used_mentions, bag)
        self._extract_distinct(normalized, mentions, used_mentions, bag)
        self._extract_sort_and_limit(normalized, taken, mentions, bag)

        for mention in mentions:
            if mention.start not in used_mentions:
                bag.field_reference = mention.token
                break

        logger.debug(
            "entities_extracted",
            text=normalized,
            comparisons=len(bag.comparisons),
            aggregation_verb=bag.aggregation_verb.value if bag.aggregation_verb else None,
            distinct=bag.distinct_request is not None,
            group_by=bag.group_by_field,
            empty=bag.is_empty,
        )
        return bag

    # Stage 1

    def _extract_status_phrases(self, text: str, taken: list[bool]) -> list[ComparisonEntity]:
        found: list[ComparisonEntity] = []
        status_rules = [
            (_ZERO_BALANCE_RE, "balance", Operator.EQ, 0),
            (_WITH_BALANCE_RE, "balance", Operator.GT, 0),
            (_NO_FEE_RE, "annual fee", Operator.EQ, 0),
        ]
        for pattern, field_token, operator, number in status_rules:
            for match in _free_matches(pattern, text, taken):
                start, end = match.span()
                _claim(taken, start, end)
                value = ComparisonValue(kind=ValueKind.MONEY, value=number, raw=match.group(0))
                found.append(ComparisonEntity(field_token, operator, value, start, end))
        return found

    # Stage 2

    def _extract_lexicon_values(self, text: str, taken: list[bool]) -> list[ComparisonEntity]:
        found: list[ComparisonEntity] = []
        for pattern, term in _LEXICON_PATTERNS:
            for match in _free_matches(pattern, text, taken):
                start, end = match.span()
                _claim(taken, start, end)
                field_token, values = LEXICON[term]
                negated = bool(_NEGATION.search(text[max(0, start - 20) : start]))
                if len(values) > 1:
                    operator = Operator.NOT_IN if negated else Operator.IN
                    value = ComparisonValue.of_string(values, term)
                else:
                    operator = Operator.NE if negated else Operator.EQ
                    value = ComparisonValue.of_string(values[0], term)
                found.append(ComparisonEntity(field_token, operator, value, start, end))
        return found

    # Stage 4

    def _extract_comparisons(
        self,
        text: str,
        taken: list[bool],
        mentions: list[FieldMention],
        used_mentions: set[int],
        existing: list[ComparisonEntity],
    ) -> list[ComparisonEntity]:
        found: list[ComparisonEntity] = []

        def segment_start(position: int) -> int:
            ends = [c.end for c in existing + found if c.end <= position]
            return max(ends) if ends else 0

        def add(operator: Operator, value: ComparisonValue, value_start: int, end: int) -> None:
            token, mention = self._field_before(text, taken, value_start, segment_start(value_start), mentions)
            start = value_start
            if mention is not None:
                used_mentions.add(mention.start)
                start = mention.start
            _claim(taken, value_start, end)
            found.append(ComparisonEntity(token, operator, value, start, end))

        for match in _free_matches(_BETWEEN_RE, text, taken):
            low = self._parse_value(match.group("low"))
            high = self._parse_value(match.group("high"))
            if low is None or high is None or (low.kind is ValueKind.DATE) != (high.kind is ValueKind.DATE):
                continue
            value = ComparisonValue(kind=low.kind, value=(low.value, high.value), raw=match.group(0))
            add(Operator.BETWEEN, value, match.start(), match.end())

        for match in _free_matches(_COMPARISON_RE, text, taken):
            op_text = " ".join(match.group("op").split())
            value = self._parse_value(match.group("value"))
            if value is None:
                continue
            if op_text == "by" and value.kind is not ValueKind.DATE:
                continue
            add(_OPERATOR_LOOKUP[op_text], value, match.start(), match.end())

        for match in _free_matches(_POSTFIX_RE, text, taken):
            value = parse_number(match.group("value"))
            if value is None:
                continue
            direction = match.group("direction")
            operator = Operator.GE if direction in ("more", "greater", "higher", "above") else Operator.LE
            add(operator, value, match.start(), match.end())

        # "annual fee of 95", "apr is 24.99"
        for mention in mentions:
            if mention.start in used_mentions:
                continue
            match = _FIELD_VALUE_RE.match(text, mention.end)
            if match is None or any(taken[match.start("value") : match.end()]):
                continue
            value = parse_number(match.group("value"))
            if value is None:
                continue
            used_mentions.add(mention.start)
            _claim(taken, match.start(), match.end())
            found.append(ComparisonEntity(mention.token, Operator.EQ, value, mention.start, match.end()))

        return found

    def _field_before(
        self,
        text: str,
        taken: list[bool],
        position: int,
        seg_start: int,
        mentions: list[FieldMention],
    ) -> tuple[str | None, FieldMention | None]:
        """Find the field token a comparison at `position` refers to."""
        candidates = [m for m in mentions if m.start >= seg_start and m.end <= position]
        if candidates:
            mention = candidates[-1]
            gap_words = re.findall(r"[a-z_']+", text[mention.end : position])
            if all(word in _FILLER_WORDS for word in gap_words):
                return mention.token, mention

        # No known field: report the nearest free word so an unknown token
        # (e.g. a typo) surfaces as unresolved instead of being dropped.
        for word_match in reversed(list(re.finditer(r"[a-z_']+", text[seg_start:position]))):
            word_start = seg_start + word_match.start()
            if taken[word_start]:
                continue
            word = word_match.group(0)
            if word in _FILLER_WORDS:
                continue
            if word in _RECORD_NOUNS or word in ("and", "or", "but", "show", "list", "me", "all"):
                return None, None
            return word, None
        return None, None

    def _parse_value(self, raw: str) -> ComparisonValue | None:
        if re.fullmatch(DATE_RE, raw.strip()):
            parsed = self._parse_date(raw)
            return ComparisonValue.of_date(parsed, raw.strip()) if parsed else None
        return parse_number(raw)

    def _parse_date(self, raw: str) -> date | None:
        cleaned = re.sub(r"(\d)(?:st|nd|rd|th)\b", r"\1", raw.strip())
        cleaned = " ".join(cleaned.replace(",", " ").replace(".", " ").split())
        cleaned = re.sub(r"^sept\b", "sep", cleaned)
        for fmt in _DATE_FORMATS:
            try:
                return datetime.strptime(cleaned, fmt).date()
            except ValueError:
                continue
        for fmt in _DATE_FORMATS_NO_YEAR:
            try:
                parsed = datetime.strptime(f"{cleaned} {self.reference_year}", f"{fmt} %Y")
                return parsed.date()
            except ValueError:
                continue
        return None

    # Connectors

    def _merge_same_field_values(self, text: str, comparisons: list[ComparisonEntity]) -> list[ComparisonEntity]:
        """Fold "visa and mastercard" / "chase or citi" into one membership test."""
        merged: list[ComparisonEntity] = []
        for comparison in comparisons:
            previous = merged[-1] if merged else None
            if previous is not None and _can_merge(text, previous, comparison):
                positive = previous.operator in (Operator.EQ, Operator.IN)
                values = _as_tuple(previous.value.value) + _as_tuple(comparison.value.value)
                value = ComparisonValue.of_string(
                    tuple(dict.fromkeys(values)), f"{previous.value.raw} / {comparison.value.raw}"
                )
                merged[-1] = ComparisonEntity(
                    previous.field_token,
                    Operator.IN if positive else Operator.NOT_IN,
                    value,
                    previous.start,
                    comparison.end,
                )
            else:
                merged.append(comparison)
        return merged

    def _assign_connectors(
        self, text: str, comparisons: list[ComparisonEntity]
    ) -> tuple[list[ComparisonEntity], LogicalConnector | None]:
        result: list[ComparisonEntity] = []
        explicit: list[LogicalConnector] = []
        for i, comparison in enumerate(comparisons):
            if i == 0:
                result.append(replace(comparison, connector=None))
                continue
            gap = text[comparisons[i - 1].end : comparison.start]
            if re.search(r"\bor\b", gap):
                connector = LogicalConnector.OR
                explicit.append(connector)
            else:
                connector = LogicalConnector.AND
                if re.search(r"\band\b", gap):
                    explicit.append(connector)
            result.append(replace(comparison, connector=connector))

        if len(result) < 2:
            return result, None
        if explicit and all(c is LogicalConnector.OR for c in explicit):
            return result, LogicalConnector.OR
        if LogicalConnector.OR in explicit:
            return result, None  # mixed
        return result, LogicalConnector.AND

    # Stage 5

    def _extract_group_by(
        self, text: str, taken: list[bool], mentions: list[FieldMention], bag: EntityBag
    ) -> int | None:
        for match in _free_matches(_GROUP_RE, text, taken):
            preceding = text[: match.start()].split()
            if preceding and preceding[-1] in _SORT_WORDS:
                continue
            rest = match.end()
            mention = next((m for m in mentions if rest <= m.start <= rest + 5), None)
            if mention is not None:
                bag.group_by_field = mention.token
                return mention.start
            if rest >= len(text) or taken[rest]:
                continue
            word = re.match(r"[a-z][a-z_']*", text[rest:])
            if word is None or word.group(0) in _RECORD_NOUNS or word.group(0) in _FILLER_WORDS:
                continue
            bag.group_by_field = word.group(0)
            return None
        return None

    def _extract_aggregation(
        self,
        text: str,
        taken: list[bool],
        mentions: list[FieldMention],
        used_mentions: set[int],
        bag: EntityBag,
    ) -> None:
        verb_matches = [m for m in _free_matches(_VERB_RE, text, taken)]
        strong = [m for m in verb_matches if " ".join(m.group(0).split()) not in _WEAK_VERBS]
        if strong:
            verb_matches = strong
        if not verb_matches:
            return

        verbs: list[AggregationVerb] = []
        for match in verb_matches:
            verb = _VERB_LOOKUP[" ".join(match.group(0).split())]
            if verb not in verbs:
                verbs.append(verb)
        bag.aggregation_verb = verbs[0]
        bag.conflicting_verbs = verbs[1:]

        first = verb_matches[0]
        for mention in mentions:
            if mention.start in used_mentions or mention.start < first.end():
                continue
            if mention.start - first.end() > 40:
                break
            bag.aggregation_field = mention.token
            break

    def _extract_distinct(
        self, text: str, mentions: list[FieldMention], used_mentions: set[int], bag: EntityBag
    ) -> None:
        include_count = _NAMES_ONLY_RE.search(text) is None

        which = _WHICH_FIELD_RE.search(text)
        if which is not None:
            target_start = which.start("target")
            target = next((m for m in mentions if m.start <= target_start < m.end), None)
            bag.distinct_request = DistinctRequest(target.token if target else None, include_count)
            return

        marker = _DISTINCT_RE.search(text)
        if marker is None:
            return
        target_token = None
        for mention in mentions:
            if mention.start in used_mentions or mention.start < marker.end():
                continue
            if mention.start - marker.end() <= 25:
                target_token = mention.token
            break
        if target_token is None:
            target_token = bag.group_by_field
        bag.distinct_request = DistinctRequest(target_token, include_count)

    def _extract_sort_and_limit(
        self, text: str, taken: list[bool], mentions: list[FieldMention], bag: EntityBag
    ) -> None:
        explicit = next(_free_matches(_SORT_RE, text, taken), None)
        if explicit is not None:
            mention = next((m for m in mentions if explicit.end() <= m.start <= explicit.end() + 5), None)
            direction = SortDirection.DESC if _DESCENDING_RE.search(text) else SortDirection.ASC
            bag.sort_spec = SortHint(mention.token if mention else None, direction)

        top_n = next(_free_matches(_TOP_N_RE, text, taken), None)
        n_superlative = next(_free_matches(_N_SUPERLATIVE_RE, text, taken), None)
        if top_n is not None:
            bag.limit_spec = int(top_n.group("n"))
            # "top 3 cards by balance" ranks, it does not group
            if bag.group_by_field and bag.aggregation_verb is None and bag.sort_spec is None:
                direction = SortDirection.ASC if top_n.group("edge") in ("bottom", "last") else SortDirection.DESC
                bag.sort_spec = SortHint(bag.group_by_field, direction)
                bag.group_by_field = None
        elif n_superlative is not None:
            bag.limit_spec = int(n_superlative.group("n"))

        superlative = next(_free_matches(_SUPERLATIVE_RE, text, taken), None)
        if superlative is not None and bag.sort_spec is None:
            word = superlative.group(0)
            mention = next(
                (m for m in mentions if superlative.end() <= m.start <= superlative.end() + 25),
                None,
            )
            token = mention.token if mention else ("annual fee" if word == "cheapest" else None)
            bag.sort_spec = SortHint(token, SUPERLATIVES[word])
            if bag.limit_spec is None:
                bag.limit_spec = 1
        elif top_n is not None and bag.sort_spec is None:
            direction = SortDirection.ASC if top_n.group("edge") in ("bottom", "last") else SortDirection.DESC
            mention = next((m for m in mentions if m.start >= top_n.end()), None)
            bag.sort_spec = SortHint(mention.token if mention else None, direction)


def _free_matches(pattern: re.Pattern[str], text: str, taken: list[bool]) -> Iterator[re.Match[str]]:
    """Yield matches that do not overlap characters claimed by earlier stages."""
    for match in pattern.finditer(text):
        if not any(taken[match.start() : match.end()]):
            yield match


def _claim(taken: list[bool], start: int, end: int) -> None:
    for i in range(start, end):
        taken[i] = True


def _as_tuple(value: str | tuple[str, ...]) -> tuple[str, ...]:
    return value if isinstance(value, tuple) else (value,)


def _can_merge(text: str, left: ComparisonEntity, right: ComparisonEntity) -> bool:
    if left.value.kind is not ValueKind.STRING or right.value.kind is not ValueKind.STRING:
        return False
    if left.field_token != right.field_token:
        return False
    positive = {Operator.EQ, Operator.IN}
    negative = {Operator.NE, Operator.NOT_IN}
    same_polarity = (left.operator in positive and right.operator in positive) or (
        left.operator in negative and right.operator in negative
    )
    if not same_polarity:
        return False
    gap_words = re.findall(r"[a-z]+", text[left.end : right.start])
    if right.operator in negative:
        gap_words = [w for w in gap_words if w not in ("not", "no", "except", "excluding")]
    return all(word in _MERGE_GAP_WORDS for word in gap_words)
