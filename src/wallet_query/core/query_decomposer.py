"""
QueryDecomposer - turns (text, entities, intent, context) into a plan.

Resolution order:
1. Pattern cache: a learned plan with similarity >= cache_similarity_threshold
   and confidence >= cache_confidence_threshold is re-bound to the current
   entities and returned with PATTERN_CACHE provenance.
2. Fresh decomposition: classify the sub-intent from the entities, map every
   field token through the field map, attach the output format.
3. Conversation context: prior-turn filters are merged in; on a field
   collision the current turn wins.

Store and embedding failures during step 1 are logged and treated as a
cache miss. Unresolvable fields raise UnresolvedFieldError and
contradictory entities raise AmbiguousQueryError; the caller turns both into
an LLM-fallback signal.
"""

from dataclasses import replace

import structlog

from wallet_query.core.conversation_context import ConversationContext
from wallet_query.core.entities import AggregationVerb, ComparisonEntity, EntityBag, LogicalConnector, ValueKind
from wallet_query.core.errors import (
    AmbiguousQueryError,
    EmbeddingServiceError,
    ExternalStoreUnavailable,
    MalformedQueryError,
    UnresolvedFieldError,
)
from wallet_query.core.field_map import CardField, ValueType, field_spec, is_numeric_field, resolve_field
from wallet_query.core.pattern_learner import PatternLearner
from wallet_query.core.query_config import QueryConfig
from wallet_query.core.query_plan import (
    AggregateQuery,
    DistinctQuery,
    FilterQuery,
    GroupedAggregateQuery,
    OutputFormat,
    PlanKind,
    Predicate,
    ResolutionPath,
    SortSpec,
    StructuredQuery,
    plan_from_dict,
)

logger = structlog.get_logger()

DEFAULT_INTENT = "query_card_data"
DEFAULT_DISTINCT_FIELD = CardField.ISSUER

# Confidence that local decomposition can answer the utterance.
CONFIDENCE_STRUCTURED = 0.9
CONFIDENCE_FIELD_ONLY = 0.75
CONFIDENCE_INTENT_ONLY = 0.6
CONFIDENCE_NONE = 0.2


def output_format_for(kind: PlanKind, predicate_count: int) -> OutputFormat:
    """Distinct -> list, aggregate -> summary, grouped or multi-predicate filter -> table."""
    if kind is PlanKind.DISTINCT:
        return OutputFormat.LIST
    if kind is PlanKind.AGGREGATE:
        return OutputFormat.SUMMARY
    if kind is PlanKind.GROUPED_AGGREGATE:
        return OutputFormat.TABLE
    return OutputFormat.TABLE if predicate_count > 1 else OutputFormat.LIST


def predicate_groups(
    predicates: tuple[Predicate, ...], connector: LogicalConnector
) -> list[list[Predicate]]:
    """Split a predicate list into OR-separated AND groups (connectors stripped)."""
    groups: list[list[Predicate]] = []
    for i, predicate in enumerate(predicates):
        joiner = predicate.connector or connector
        bare = replace(predicate, connector=None)
        if i == 0 or joiner is LogicalConnector.OR:
            groups.append([bare])
        else:
            groups[-1].append(bare)
    return groups


def flatten_groups(groups: list[list[Predicate]]) -> tuple[tuple[Predicate, ...], LogicalConnector]:
    """
    Inverse of predicate_groups.

    Uniform plans keep a single query-level connector; mixed plans carry an
    explicit connector on every predicate after the first.
    """
    groups = [g for g in groups if g]
    if not groups:
        return (), LogicalConnector.AND
    if len(groups) == 1:
        return tuple(groups[0]), LogicalConnector.AND
    if all(len(g) == 1 for g in groups):
        return tuple(g[0] for g in groups), LogicalConnector.OR

    flat: list[Predicate] = []
    for group in groups:
        for j, predicate in enumerate(group):
            if not flat:
                flat.append(predicate)
            else:
                joiner = LogicalConnector.OR if j == 0 else LogicalConnector.AND
                flat.append(replace(predicate, connector=joiner))
    return tuple(flat), LogicalConnector.AND


class QueryDecomposer:
    """
    Builds StructuredQuery plans from extracted entities.

    Args:
        learner: Optional pattern learner used for the cache fast path (read only)
        config: Thresholds and context-merge mode
    """

    def __init__(self, learner: PatternLearner | None = None, config: QueryConfig | None = None):
        self.learner = learner
        self.config = config or QueryConfig()

    # Confidence gate

    def assess_confidence(self, entities: EntityBag, intent: str | None) -> float:
        """
        Confidence that the utterance can be answered without the LLM fallback.

        An empty bag is answerable as "show all" only under a card-data intent.
        """
        if entities.distinct_request or entities.aggregation_verb or entities.comparisons or entities.group_by_field:
            return CONFIDENCE_STRUCTURED
        if entities.field_reference or entities.sort_spec or entities.field_tokens:
            return CONFIDENCE_FIELD_ONLY
        if intent in self.config.supported_intents:
            return CONFIDENCE_INTENT_ONLY
        return CONFIDENCE_NONE

    def requires_fallback(self, entities: EntityBag, intent: str | None) -> bool:
        return self.assess_confidence(entities, intent) < self.config.fallback_confidence_threshold

    # Decomposition

    def decompose(
        self,
        text: str,
        entities: EntityBag,
        intent: str | None,
        context: ConversationContext | None = None,
    ) -> StructuredQuery:
        """
        Build the plan for one utterance.

        Raises:
            UnresolvedFieldError: If a required field token has no mapping
            AmbiguousQueryError: If the entities contradict each other
        """
        if entities.conflicting_verbs:
            verbs = [entities.aggregation_verb] + entities.conflicting_verbs
            raise AmbiguousQueryError(
                [f"multiple aggregation verbs: {', '.join(v.value for v in verbs if v is not None)}"]
            )

        source_intent = intent or DEFAULT_INTENT
        plan = self._try_pattern_cache(text, entities, source_intent)
        if plan is None:
            plan = self._decompose_fresh(entities, source_intent)

        plan = self._merge_context(plan, text, context)
        logger.info(
            "query_decomposed",
            kind=plan.kind.value,
            resolution_path=plan.resolution_path.value,
            pattern_id=plan.pattern_id,
            predicates=len(plan.predicates),
            output_format=plan.output_format.value,
        )
        return plan

    def classify(self, entities: EntityBag) -> PlanKind:
        if entities.distinct_request is not None:
            return PlanKind.DISTINCT
        if entities.group_by_field is not None:
            return PlanKind.GROUPED_AGGREGATE
        if entities.aggregation_verb is not None:
            return PlanKind.AGGREGATE
        return PlanKind.FILTER

    def _decompose_fresh(self, entities: EntityBag, intent: str) -> StructuredQuery:
        predicates, connector = self._map_predicates(entities)
        kind = self.classify(entities)
        common = {
            "source_intent": intent,
            "predicates": predicates,
            "connector": connector,
            "output_format": output_format_for(kind, len(predicates)),
        }

        if kind is PlanKind.DISTINCT:
            return DistinctQuery(
                field=self._distinct_field(entities, DEFAULT_DISTINCT_FIELD),
                include_count=entities.distinct_request.include_count,
                **common,
            )

        if kind is PlanKind.GROUPED_AGGREGATE:
            # Group-by without a verb counts records per group
            verb = entities.aggregation_verb or AggregationVerb.COUNT
            return GroupedAggregateQuery(
                verb=verb,
                field=self._aggregate_field(entities, verb),
                group_field=self._resolve_required(entities.group_by_field, "group by"),
                **common,
            )

        if kind is PlanKind.AGGREGATE:
            verb = entities.aggregation_verb
            return AggregateQuery(verb=verb, field=self._aggregate_field(entities, verb), **common)

        return FilterQuery(sort=self._sort_spec(entities), limit=entities.limit_spec, **common)

    # Pattern cache

    def _try_pattern_cache(self, text: str, entities: EntityBag, intent: str) -> StructuredQuery | None:
        if self.learner is None or not self.config.enable_pattern_cache:
            return None

        try:
            match = self.learner.find_match(
                text, entities, intent=intent, min_confidence=self.config.cache_confidence_threshold
            )
        except (ExternalStoreUnavailable, EmbeddingServiceError) as e:
            logger.warning("pattern_cache_unavailable", error_type=type(e).__name__, error=str(e))
            return None

        if match is None:
            return None
        record = match.record
        if (
            match.similarity < self.config.cache_similarity_threshold
            or record.confidence < self.config.cache_confidence_threshold
        ):
            logger.debug(
                "pattern_cache_below_threshold",
                pattern_id=record.id,
                similarity=match.similarity,
                confidence=record.confidence,
            )
            return None

        try:
            cached = plan_from_dict(record.decomposed_query)
            kind = self.classify(entities)
            if cached.kind is not kind:
                logger.info(
                    "pattern_cache_kind_mismatch",
                    pattern_id=record.id,
                    cached_kind=cached.kind.value,
                    kind=kind.value,
                )
                return None
            plan = self._adapt_cached_plan(cached, entities, intent)
        except (MalformedQueryError, UnresolvedFieldError, AmbiguousQueryError) as e:
            logger.info("pattern_cache_adaptation_failed", pattern_id=record.id, error=str(e))
            return None

        logger.info(
            "pattern_cache_hit",
            pattern_id=record.id,
            similarity=round(match.similarity, 4),
            confidence=round(record.confidence, 4),
        )
        return plan.with_provenance(ResolutionPath.PATTERN_CACHE, record.id)

    def _adapt_cached_plan(self, cached: StructuredQuery, entities: EntityBag, intent: str) -> StructuredQuery:
        """Keep the cached plan's shape, re-bind fields and values from the current entities."""
        predicates, connector = self._map_predicates(entities)
        common = {
            "source_intent": intent,
            "predicates": predicates,
            "connector": connector,
            "output_format": output_format_for(cached.kind, len(predicates)),
        }

        if isinstance(cached, DistinctQuery):
            return DistinctQuery(
                field=self._distinct_field(entities, cached.field),
                include_count=(
                    entities.distinct_request.include_count if entities.distinct_request else cached.include_count
                ),
                **common,
            )

        if isinstance(cached, (AggregateQuery, GroupedAggregateQuery)):
            verb = entities.aggregation_verb or cached.verb
            card_field = cached.field
            if entities.aggregation_field or entities.field_reference:
                card_field = self._aggregate_field(entities, verb)
            elif card_field is not None and verb.is_numeric and not is_numeric_field(card_field):
                raise AmbiguousQueryError([f"cannot {verb.value} non-numeric field {card_field.value}"])
            if isinstance(cached, GroupedAggregateQuery):
                group_field = cached.group_field
                if entities.group_by_field:
                    group_field = self._resolve_required(entities.group_by_field, "group by")
                return GroupedAggregateQuery(verb=verb, field=card_field, group_field=group_field, **common)
            return AggregateQuery(verb=verb, field=card_field, **common)

        assert isinstance(cached, FilterQuery)
        sort = self._sort_spec(entities) if entities.sort_spec else cached.sort
        limit = entities.limit_spec if entities.limit_spec is not None else cached.limit
        return FilterQuery(sort=sort, limit=limit, **common)

    # Context

    def _merge_context(
        self, plan: StructuredQuery, text: str, context: ConversationContext | None
    ) -> StructuredQuery:
        """
        AND the previous turn's filters into the plan.

        Prior predicates on a field the current turn also constrains are
        dropped (current turn wins). Retained filters are distributed over
        every OR group of the current plan.
        """
        if context is None or not context.active_filters:
            return plan
        mode = self.config.context_merge_mode
        if mode == "never" or (mode == "follow_up" and not context.is_follow_up(text)):
            return plan

        current_fields = {p.field for p in plan.predicates}
        prior_connector = context.last_query.connector if context.last_query else LogicalConnector.AND
        prior_groups = predicate_groups(context.active_filters, prior_connector)
        retained_groups = [[p for p in group if p.field not in current_fields] for group in prior_groups]
        if any(not group for group in retained_groups):
            # One prior alternative was fully overridden, so the prior filter
            # no longer constrains anything.
            return plan

        current_groups = predicate_groups(plan.predicates, plan.connector) or [[]]
        merged_groups = [current + retained for current in current_groups for retained in retained_groups]
        predicates, connector = flatten_groups(merged_groups)

        logger.debug(
            "context_filters_merged",
            session_id=context.session_id,
            retained=sum(len(g) for g in retained_groups),
            predicates=len(predicates),
        )
        output_format = plan.output_format
        if plan.kind is PlanKind.FILTER:
            output_format = output_format_for(PlanKind.FILTER, len(predicates))
        return replace(plan, predicates=predicates, connector=connector, output_format=output_format)

    # Mapping helpers

    def _map_predicates(self, entities: EntityBag) -> tuple[tuple[Predicate, ...], LogicalConnector]:
        default_connector = entities.logical_connector or LogicalConnector.AND
        groups: list[list[Predicate]] = []
        for i, comparison in enumerate(entities.comparisons):
            card_field = self._resolve_required(comparison.field_token, f"comparison '{comparison.value.raw}'")
            predicate = Predicate(
                field=card_field,
                operator=comparison.operator,
                value=self._bind_value(card_field, comparison),
            )
            joiner = comparison.connector or default_connector
            if i == 0 or joiner is LogicalConnector.OR:
                groups.append([predicate])
            else:
                groups[-1].append(predicate)
        return flatten_groups(groups)

    @staticmethod
    def _bind_value(card_field: CardField, comparison: ComparisonEntity):
        value_type = field_spec(card_field).value_type
        kind = comparison.value.kind
        compatible = {
            ValueKind.STRING: value_type in (ValueType.TEXT, ValueType.JSON, ValueType.BOOLEAN),
            ValueKind.DATE: value_type is ValueType.DATE,
        }.get(kind, value_type.is_numeric)
        if not compatible:
            raise AmbiguousQueryError(
                [f"'{comparison.value.raw}' is not comparable with {card_field.value} ({value_type.value})"]
            )
        return comparison.value.value

    @staticmethod
    def _resolve_required(token: str | None, context: str) -> CardField:
        card_field = resolve_field(token)
        if card_field is None:
            raise UnresolvedFieldError(token, context)
        return card_field

    def _distinct_field(self, entities: EntityBag, default: CardField) -> CardField:
        request = entities.distinct_request
        token = (request.target_token if request else None) or entities.field_reference
        if token is None:
            return default
        return self._resolve_required(token, "distinct target")

    def _aggregate_field(self, entities: EntityBag, verb: AggregationVerb) -> CardField | None:
        token = entities.aggregation_field or entities.field_reference
        if token is None:
            if verb is AggregationVerb.COUNT:
                return None
            raise UnresolvedFieldError(None, f"{verb.value} needs a field")
        card_field = self._resolve_required(token, f"{verb.value} field")
        if verb.is_numeric and not is_numeric_field(card_field):
            raise AmbiguousQueryError([f"cannot {verb.value} non-numeric field {card_field.value}"])
        return card_field

    def _sort_spec(self, entities: EntityBag) -> SortSpec | None:
        hint = entities.sort_spec
        if hint is None:
            return None
        token = hint.field_token or entities.field_reference
        return SortSpec(field=self._resolve_required(token, "sort"), direction=hint.direction)
