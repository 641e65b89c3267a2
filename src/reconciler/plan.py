"""Change-set planning.

Diffs desired state (the resource graph) against observed state (the
state store, refreshed through each provider's read) and produces an
ordered change-set: creates/updates/no-ops in dependency order, then
deletes of resources no longer declared, dependents first.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Iterator, Optional

from common import retry_call
from reconciler.errors import CycleError, PlanError
from reconciler.graph import (
    UNKNOWN,
    Reference,
    ResourceGraph,
    ResourceSpec,
    contains_unknown,
    lookup_path,
    stable_topological_sort,
)
from reconciler.registry import ProviderRegistry
from reconciler.state import ResourceState

logger = logging.getLogger(__name__)

CREATE = 'create'
UPDATE = 'update'
DELETE = 'delete'
NOOP = 'no-op'

ACTIONS = (CREATE, UPDATE, DELETE, NOOP)


@dataclass
class ChangeSetEntry:
    """One planned action.

    Attributes:
        identifier: Resource identifier (kind.name)
        action: create, update, delete or no-op
        depends_on: Identifiers whose entries must succeed first. For
            create/update/no-op these are the resource's dependencies; for
            delete they are its recorded dependents, deleted or still declared.
        spec: Desired spec, references unresolved (create/update/no-op)
        prior: Observed state (update/delete/no-op)
        changed: Attribute names that differ (update) or are set (create)
        planned: Desired attributes as far as known at plan time
    """
    identifier: str
    action: str
    depends_on: list[str] = field(default_factory=list)
    spec: Optional[ResourceSpec] = None
    prior: Optional[ResourceState] = None
    changed: list[str] = field(default_factory=list)
    planned: dict = field(default_factory=dict)

    @property
    def kind(self) -> str:
        return self.identifier.split('.', 1)[0]

    @property
    def is_change(self) -> bool:
        return self.action != NOOP

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'id': self.identifier,
            'action': self.action,
            'depends_on': list(self.depends_on),
        }
        if self.changed:
            d['changed'] = list(self.changed)
        return d


@dataclass
class ChangeSet:
    """Ordered change-set for one run."""
    entries: list[ChangeSetEntry] = field(default_factory=list)
    destroy: bool = False

    def __iter__(self) -> Iterator[ChangeSetEntry]:
        return iter(self.entries)

    def __len__(self) -> int:
        return len(self.entries)

    @property
    def ids(self) -> list[str]:
        return [e.identifier for e in self.entries]

    @property
    def changes(self) -> list[ChangeSetEntry]:
        """Entries other than no-op."""
        return [e for e in self.entries if e.is_change]

    @property
    def is_empty(self) -> bool:
        return not self.changes

    def get(self, identifier: str) -> ChangeSetEntry:
        """Get the entry for identifier.

        Raises:
            KeyError: If identifier has no entry
        """
        for entry in self.entries:
            if entry.identifier == identifier:
                return entry
        raise KeyError(identifier)

    def summary(self) -> dict[str, int]:
        counts = {action: 0 for action in ACTIONS}
        for entry in self.entries:
            counts[entry.action] += 1
        return counts

    def to_dict(self) -> dict:
        return {
            'destroy': self.destroy,
            'summary': self.summary(),
            'entries': [e.to_dict() for e in self.entries],
        }


def diff_attributes(desired: dict, observed: dict) -> list[str]:
    """Names of desired attributes that differ from observed.

    Only desired keys are compared; provider-computed extras are ignored.
    Unknown values always count as different.
    """
    changed = []
    for key, value in desired.items():
        if contains_unknown(value):
            changed.append(key)
        elif key not in observed or observed[key] != value:
            changed.append(key)
    return changed


def _delete_entries(states: list[ResourceState]) -> list[ChangeSetEntry]:
    """Delete entries in reverse dependency order (dependents first)."""
    ids = [s.identifier for s in states]
    by_id = {s.identifier: s for s in states}
    deps = {s.identifier: s.dependencies for s in states}
    try:
        order = stable_topological_sort(ids, deps)
    except CycleError as e:
        raise PlanError(f"Cannot order deletes: {e}")

    dependents: dict[str, list[str]] = {ident: [] for ident in ids}
    for ident in order:
        for dep in deps[ident]:
            if dep in dependents:
                dependents[dep].append(ident)

    entries = []
    for ident in reversed(order):
        entries.append(ChangeSetEntry(
            identifier=ident,
            action=DELETE,
            depends_on=sorted(dependents[ident]),
            prior=by_id[ident],
        ))
    return entries


@dataclass
class Planner:
    """Computes change-sets against a state store.

    Attributes:
        graph: Desired state (None is allowed for plan_destroy)
        registry: Provider lookup
        store: State store (StateStore or MemoryStateStore)
        refresh: Query providers for live state; False trusts the store
        timeout: Per-read timeout in seconds
        max_retries: Retries for transient read failures
    """
    graph: Optional[ResourceGraph]
    registry: ProviderRegistry
    store: Any
    refresh: bool = True
    timeout: Optional[float] = None
    max_retries: int = 0
    backoff_base: float = 1.0
    backoff_max: float = 30.0

    def _observe(self, prior: Optional[ResourceState]) -> Optional[ResourceState]:
        """Refresh prior state through the provider's read()."""
        if prior is None or not self.refresh:
            return prior
        provider = self.registry.lookup(prior.kind)
        current = retry_call(
            lambda: provider.read(prior),
            max_retries=self.max_retries,
            backoff_base=self.backoff_base,
            backoff_max=self.backoff_max,
            timeout=self.timeout,
            label=f'[read] {prior.identifier}',
        )
        if current is None:
            logger.info(f"[plan] {prior.identifier} no longer exists remotely, will re-create")
            return None
        current.dependencies = list(prior.dependencies)
        current.updated_at = prior.updated_at
        if current.external_id is None:
            current.external_id = prior.external_id
        return current

    def plan(self) -> ChangeSet:
        """Compute the change-set reconciling the graph with observed state.

        Raises:
            PlanError: If the graph cannot be topologically sorted
            UnknownKindError: If a declared or tracked kind has no provider
            ProviderError: If observed state cannot be read
            StateStoreError: If stored state cannot be read
        """
        if self.graph is None:
            raise PlanError("plan() requires a resource graph")
        try:
            order = self.graph.topological_order()
        except CycleError as e:
            raise PlanError(f"Cannot order resources: {e}")

        orphans = [s for s in self.store.list() if s.identifier not in self.graph]
        self.registry.validate(self.graph, extra_kinds=[s.kind for s in orphans])

        planned: dict[str, ChangeSetEntry] = {}
        recorded: dict[str, list[str]] = {}
        observed: dict[str, Optional[ResourceState]] = {}
        entries: list[ChangeSetEntry] = []

        def _lookup(ref: Reference) -> Any:
            entry = planned[ref.target]
            current = observed[ref.target]
            if not ref.path:
                if entry.action == CREATE or current is None:
                    return UNKNOWN
                return current.external_id
            if ref.path[0] in entry.planned:
                try:
                    return lookup_path(entry.planned, ref.path)
                except KeyError:
                    return UNKNOWN
            if entry.action == CREATE or current is None:
                return UNKNOWN
            try:
                return lookup_path(current.attributes, ref.path)
            except KeyError:
                return UNKNOWN

        for spec in order:
            ident = spec.identifier
            prior = self.store.get(ident)
            if prior is not None:
                recorded[ident] = list(prior.dependencies)
            current = self._observe(prior)
            observed[ident] = current
            desired = spec.resolve(_lookup)

            if current is None:
                action = CREATE
                changed = sorted(desired.attributes)
            else:
                changed = diff_attributes(desired.attributes, current.attributes)
                action = UPDATE if changed else NOOP

            entry = ChangeSetEntry(
                identifier=ident,
                action=action,
                depends_on=list(spec.dependencies),
                spec=spec,
                prior=current,
                changed=changed,
                planned=desired.attributes,
            )
            planned[ident] = entry
            entries.append(entry)
            logger.debug(f"[plan] {ident}: {action}" + (f" ({', '.join(changed)})" if action == UPDATE else ''))

        deletes = _delete_entries(orphans)
        # A declared resource that last applied against an orphan releases it first
        for entry in deletes:
            holders = [ident for ident, deps in recorded.items() if entry.identifier in deps]
            entry.depends_on = sorted(set(entry.depends_on) | set(holders))
        entries.extend(deletes)

        changeset = ChangeSet(entries=entries)
        logger.info("Plan: %(create)d to create, %(update)d to update, %(delete)d to delete, "
                    "%(no-op)d unchanged", changeset.summary())
        return changeset

    def plan_destroy(self) -> ChangeSet:
        """Plan deletion of every tracked resource.

        Raises:
            PlanError: If stored dependencies form a cycle
            UnknownKindError: If a tracked kind has no provider
        """
        states = self.store.list()
        for state in states:
            self.registry.lookup(state.kind)
        changeset = ChangeSet(entries=_delete_entries(states), destroy=True)
        logger.info(f"Plan: {len(changeset)} to delete")
        return changeset
