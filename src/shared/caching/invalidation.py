"""
Cache invalidation rules for Touchline Core.

Maps a write on an entity (club, league, table entry, team) to the cached
query keys that may now be stale: the entity's own key and every dependent
aggregate or list key. Aggregates are invalidated conservatively, by query
type, since writes are rare compared to reads.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, FrozenSet, Iterable, List, Optional

from ..logging_config import get_logger


class ChangeKind(str, Enum):
    """Kind of write that triggered an invalidation."""
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    MEMBERSHIP = "membership"


class InvalidationScope(str, Enum):
    """How much of a query type a rule clears."""
    ENTITY = "entity"  # every variant of the written entity's key
    ALL = "all"        # every key of the query type


ALL_CHANGES: FrozenSet[ChangeKind] = frozenset(ChangeKind)


@dataclass(frozen=True)
class InvalidationTarget:
    """A query type and scope to clear."""
    query_type: str
    scope: InvalidationScope = InvalidationScope.ENTITY


@dataclass(frozen=True)
class ResolvedTarget:
    """A target bound to the concrete entity id of a write."""
    query_type: str
    entity_id: Optional[str]

    @property
    def pattern(self) -> str:
        """Glob pattern (without namespace) matching the affected keys."""
        if self.entity_id is None:
            return f"{self.query_type}:*"
        return f"{self.query_type}:{self.entity_id}:*"


@dataclass
class InvalidationRule:
    """Cache invalidation rule for one entity type."""
    entity_type: str
    targets: List[InvalidationTarget]
    change_kinds: FrozenSet[ChangeKind] = ALL_CHANGES
    enabled: bool = True

    # Statistics
    triggered_count: int = 0
    last_triggered: Optional[datetime] = None

    def applies_to(self, entity_type: str, change_kind: ChangeKind) -> bool:
        return self.enabled and self.entity_type == entity_type and change_kind in self.change_kinds


class InvalidationRegistry:
    """Registry resolving entity writes into affected cache keys."""

    def __init__(self, rules: Optional[Iterable[InvalidationRule]] = None):
        self.logger = get_logger(__name__, 'invalidation_registry')
        self.rules: Dict[str, List[InvalidationRule]] = {}
        for rule in rules or ():
            self.register_rule(rule)

    def register_rule(self, rule: InvalidationRule) -> None:
        """Register a cache invalidation rule."""
        self.rules.setdefault(rule.entity_type, []).append(rule)
        self.logger.debug(
            f"Registered invalidation rule for {rule.entity_type}",
            operation="register_rule",
            targets=[target.query_type for target in rule.targets],
        )

    def resolve(self, entity_type: str, entity_id, change_kind: ChangeKind) -> List[ResolvedTarget]:
        """Resolve a write into the de-duplicated list of targets to clear."""
        resolved: Dict[str, ResolvedTarget] = {}
        matched = False

        for rule in self.rules.get(entity_type, []):
            if not rule.applies_to(entity_type, change_kind):
                continue
            matched = True
            rule.triggered_count += 1
            rule.last_triggered = datetime.utcnow()

            for target in rule.targets:
                bound = ResolvedTarget(
                    query_type=target.query_type,
                    entity_id=str(entity_id) if target.scope == InvalidationScope.ENTITY else None,
                )
                existing = resolved.get(target.query_type)
                # A type-wide clear subsumes any entity-scoped clear of the same type
                if existing is None or bound.entity_id is None:
                    resolved[target.query_type] = bound

        if not matched:
            self.logger.warning(
                f"No invalidation rule for entity type '{entity_type}'",
                operation="resolve",
                entity_type=entity_type,
                change_kind=change_kind.value,
            )

        return list(resolved.values())

    def get_stats(self) -> Dict[str, Dict[str, object]]:
        """Get per-rule trigger statistics."""
        return {
            entity_type: {
                'rules': len(rules),
                'triggered_count': sum(rule.triggered_count for rule in rules),
                'last_triggered': max(
                    (rule.last_triggered for rule in rules if rule.last_triggered), default=None
                ),
            }
            for entity_type, rules in self.rules.items()
        }


def create_default_invalidation_rules() -> List[InvalidationRule]:
    """Default dependencies between club/league writes and cached queries."""
    return [
        InvalidationRule(
            entity_type="club",
            targets=[
                InvalidationTarget("club"),
                InvalidationTarget("club_stats"),
                InvalidationTarget("league_clubs", InvalidationScope.ALL),
                InvalidationTarget("league_table", InvalidationScope.ALL),
                InvalidationTarget("team_club", InvalidationScope.ALL),
            ],
        ),
        InvalidationRule(
            entity_type="league",
            targets=[
                InvalidationTarget("league_clubs"),
                InvalidationTarget("league_table"),
                InvalidationTarget("club_stats", InvalidationScope.ALL),
            ],
        ),
        InvalidationRule(
            entity_type="table_entry",
            targets=[
                InvalidationTarget("league_table", InvalidationScope.ALL),
                InvalidationTarget("club_stats", InvalidationScope.ALL),
            ],
        ),
        InvalidationRule(
            entity_type="team",
            targets=[
                InvalidationTarget("team_club", InvalidationScope.ALL),
            ],
        ),
    ]
