"""Resource graph construction and ordering.

Builds a dependency graph from resource declarations. Placeholders are
resolved here: ${var.NAME} is substituted from the variable map, and
${KIND.NAME[.ATTR]} becomes a Reference plus a dependency edge, so the
ordering requirement between resources is explicit before any planning.
"""

import heapq
import logging
import re
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Iterable, Iterator, Optional

from reconciler.errors import CycleError, DuplicateResourceError, UnresolvedReferenceError

logger = logging.getLogger(__name__)

# Optional leading '$' escapes the placeholder ($${x} -> literal ${x})
PLACEHOLDER_RE = re.compile(r'(\$?)\$\{([^}]*)\}')

VAR_PREFIX = 'var'


class _Unknown:
    """Marker for a value only known after a dependency is applied."""

    def __repr__(self) -> str:
        return '(known after apply)'

    def __str__(self) -> str:
        return '(known after apply)'


UNKNOWN = _Unknown()


@dataclass(frozen=True)
class Reference:
    """Pointer to another resource's ID or state attribute.

    Attributes:
        target: Identifier of the referenced resource (kind.name)
        path: Attribute path inside its state; empty means the external ID
    """
    target: str
    path: tuple = ()

    def __str__(self) -> str:
        if self.path:
            return '${' + self.target + '.' + '.'.join(self.path) + '}'
        return '${' + self.target + '}'


@dataclass(frozen=True)
class Template:
    """String with embedded references, rendered once they resolve."""
    parts: tuple

    def references(self) -> Iterator[Reference]:
        for part in self.parts:
            if isinstance(part, Reference):
                yield part

    def __str__(self) -> str:
        return ''.join(str(p) for p in self.parts)


@dataclass(frozen=True)
class ResourceSpec:
    """Desired state of one resource, with references made explicit.

    Attributes:
        kind: Resource kind
        name: Resource name
        attributes: Attribute map; may hold Reference/Template values until resolved
        dependencies: Identifiers this resource depends on, in first-seen order
        index: Position in the input declarations (tie-breaker for ordering)
    """
    kind: str
    name: str
    attributes: dict = field(default_factory=dict)
    dependencies: tuple = ()
    index: int = 0

    @property
    def identifier(self) -> str:
        return f'{self.kind}.{self.name}'

    def references(self) -> list[Reference]:
        """All references held in the attribute map."""
        return list(_iter_references(self.attributes))

    @property
    def is_resolved(self) -> bool:
        return not self.references() and not contains_unknown(self.attributes)

    def resolve(self, lookup: Callable[[Reference], Any]) -> 'ResourceSpec':
        """Return a copy with every reference replaced by lookup(reference).

        lookup may return UNKNOWN; a template containing an unknown part
        renders as UNKNOWN.
        """
        return replace(self, attributes=_resolve_value(self.attributes, lookup))

    def __repr__(self) -> str:
        return f"ResourceSpec({self.identifier}, deps={list(self.dependencies)})"


def _iter_references(value: Any) -> Iterator[Reference]:
    if isinstance(value, Reference):
        yield value
    elif isinstance(value, Template):
        yield from value.references()
    elif isinstance(value, dict):
        for v in value.values():
            yield from _iter_references(v)
    elif isinstance(value, (list, tuple)):
        for v in value:
            yield from _iter_references(v)


def contains_unknown(value: Any) -> bool:
    if value is UNKNOWN:
        return True
    if isinstance(value, dict):
        return any(contains_unknown(v) for v in value.values())
    if isinstance(value, (list, tuple)):
        return any(contains_unknown(v) for v in value)
    return False


def _resolve_value(value: Any, lookup: Callable[[Reference], Any]) -> Any:
    if isinstance(value, Reference):
        return lookup(value)
    if isinstance(value, Template):
        rendered = []
        for part in value.parts:
            if isinstance(part, Reference):
                part = lookup(part)
                if part is UNKNOWN:
                    return UNKNOWN
            rendered.append(str(part))
        return ''.join(rendered)
    if isinstance(value, dict):
        return {k: _resolve_value(v, lookup) for k, v in value.items()}
    if isinstance(value, list):
        return [_resolve_value(v, lookup) for v in value]
    return value


def lookup_path(data: Any, path: Iterable[str]) -> Any:
    """Walk a dotted path through nested dicts (and lists by index).

    Raises:
        KeyError: If any path segment is missing
    """
    current = data
    for key in path:
        if isinstance(current, dict) and key in current:
            current = current[key]
        elif isinstance(current, list) and key.isdigit() and int(key) < len(current):
            current = current[int(key)]
        else:
            raise KeyError(key)
    return current


class _Interpolator:
    """Rewrites placeholders in one declaration's attributes."""

    def __init__(self, source: str, variables: dict, known_ids: set[str]):
        self.source = source
        self.variables = variables
        self.known_ids = known_ids
        self.dependencies: list[str] = []

    def _variable(self, expr: str, path: list[str]) -> Any:
        try:
            return lookup_path(self.variables, path)
        except KeyError:
            raise UnresolvedReferenceError(
                self.source, expr,
                f"Resource '{self.source}' references undefined variable '{expr}'",
            )

    def _reference(self, expr: str) -> Any:
        """Translate one placeholder expression into a value or Reference."""
        parts = [p.strip() for p in expr.split('.')]
        if len(parts) < 2 or not all(parts):
            raise UnresolvedReferenceError(
                self.source, expr,
                f"Resource '{self.source}' has malformed reference '${{{expr}}}'",
            )
        if parts[0] == VAR_PREFIX:
            return self._variable(expr, parts[1:])

        target = f'{parts[0]}.{parts[1]}'
        if target not in self.known_ids:
            raise UnresolvedReferenceError(self.source, target)
        if target == self.source:
            raise CycleError([self.source, self.source])
        if target not in self.dependencies:
            self.dependencies.append(target)
        return Reference(target=target, path=tuple(parts[2:]))

    def _string(self, text: str) -> Any:
        matches = list(PLACEHOLDER_RE.finditer(text))
        if not matches:
            return text

        # Whole-string placeholder keeps the referenced value's type
        if len(matches) == 1 and matches[0].span() == (0, len(text)) and not matches[0].group(1):
            return self._reference(matches[0].group(2).strip())

        parts: list[Any] = []
        pos = 0
        for m in matches:
            parts.append(text[pos:m.start()])
            if m.group(1):
                parts.append('${' + m.group(2) + '}')
            else:
                value = self._reference(m.group(2).strip())
                parts.append(value if isinstance(value, Reference) else str(value))
            pos = m.end()
        parts.append(text[pos:])

        if any(isinstance(p, Reference) for p in parts):
            merged: list[Any] = []
            for p in parts:
                if isinstance(p, str) and merged and isinstance(merged[-1], str):
                    merged[-1] += p
                elif p != '':
                    merged.append(p)
            return Template(parts=tuple(merged))
        return ''.join(parts)

    def rewrite(self, value: Any) -> Any:
        if isinstance(value, str):
            return self._string(value)
        if isinstance(value, dict):
            return {k: self.rewrite(v) for k, v in value.items()}
        if isinstance(value, list):
            return [self.rewrite(v) for v in value]
        return value


def stable_topological_sort(ids: list[str], dependencies: dict[str, Iterable[str]]) -> list[str]:
    """Order ids so every dependency precedes its dependents.

    Ties are broken by position in ids. Dependencies outside ids are ignored.

    Raises:
        CycleError: If the remaining edges form a cycle
    """
    position = {ident: i for i, ident in enumerate(ids)}
    indegree = {ident: 0 for ident in ids}
    dependents: dict[str, list[str]] = {ident: [] for ident in ids}
    for ident in ids:
        for dep in set(dependencies.get(ident, ())):
            if dep in position:
                indegree[ident] += 1
                dependents[dep].append(ident)

    ready = [(position[i], i) for i in ids if indegree[i] == 0]
    heapq.heapify(ready)
    ordered: list[str] = []
    while ready:
        _, ident = heapq.heappop(ready)
        ordered.append(ident)
        for child in dependents[ident]:
            indegree[child] -= 1
            if indegree[child] == 0:
                heapq.heappush(ready, (position[child], child))

    if len(ordered) != len(ids):
        remaining = [i for i in ids if i not in set(ordered)]
        raise CycleError(_find_cycle(remaining, dependencies) or remaining)
    return ordered


def _find_cycle(ids: list[str], dependencies: dict[str, Iterable[str]]) -> Optional[list[str]]:
    """Find one cycle using DFS with a recursion stack.

    Returns:
        Cycle path with the first node repeated at the end, or None
    """
    id_set = set(ids)
    visited: set[str] = set()
    stack: list[str] = []
    in_stack: set[str] = set()

    def _visit(ident: str) -> Optional[list[str]]:
        visited.add(ident)
        stack.append(ident)
        in_stack.add(ident)
        for dep in dependencies.get(ident, ()):
            if dep not in id_set:
                continue
            if dep in in_stack:
                return stack[stack.index(dep):] + [dep]
            if dep not in visited:
                found = _visit(dep)
                if found:
                    return found
        stack.pop()
        in_stack.discard(ident)
        return None

    for ident in ids:
        if ident not in visited:
            found = _visit(ident)
            if found:
                return found
    return None


class ResourceGraph:
    """Dependency graph of resource specs.

    Edges run from a resource to the resources it depends on. The graph is
    acyclic and closed: every dependency is a member.
    """

    def __init__(self, specs: list[ResourceSpec]):
        self._specs: dict[str, ResourceSpec] = {s.identifier: s for s in specs}
        self._dependents: dict[str, list[str]] = {ident: [] for ident in self._specs}
        for spec in specs:
            for dep in spec.dependencies:
                self._dependents[dep].append(spec.identifier)

    def __len__(self) -> int:
        return len(self._specs)

    def __contains__(self, identifier: str) -> bool:
        return identifier in self._specs

    @property
    def ids(self) -> list[str]:
        """Identifiers in declaration order."""
        return list(self._specs)

    @property
    def specs(self) -> list[ResourceSpec]:
        return list(self._specs.values())

    def get(self, identifier: str) -> ResourceSpec:
        """Get a spec by identifier.

        Raises:
            KeyError: If identifier not found
        """
        return self._specs[identifier]

    def dependencies(self, identifier: str) -> list[str]:
        return list(self._specs[identifier].dependencies)

    def dependents(self, identifier: str) -> list[str]:
        """Resources that directly depend on identifier."""
        return list(self._dependents[identifier])

    def transitive_dependents(self, identifier: str) -> set[str]:
        """Resources that depend on identifier directly or transitively."""
        seen: set[str] = set()
        pending = list(self._dependents[identifier])
        while pending:
            current = pending.pop()
            if current in seen:
                continue
            seen.add(current)
            pending.extend(self._dependents[current])
        return seen

    def topological_order(self) -> list[ResourceSpec]:
        """Dependencies before dependents; ties broken by declaration order.

        Raises:
            CycleError: If the graph contains a cycle
        """
        deps = {ident: spec.dependencies for ident, spec in self._specs.items()}
        return [self._specs[i] for i in stable_topological_sort(self.ids, deps)]

    def reverse_topological_order(self) -> list[ResourceSpec]:
        """Dependents before dependencies (deletion order)."""
        return list(reversed(self.topological_order()))


def build_graph(declarations: list, variables: Optional[dict] = None) -> ResourceGraph:
    """Build a ResourceGraph from resource declarations.

    Args:
        declarations: Objects with kind, name, attributes and optional depends_on
            (manifest.ResourceDecl), in document order
        variables: Values for ${var.NAME} placeholders

    Returns:
        Validated, acyclic ResourceGraph

    Raises:
        DuplicateResourceError: If two declarations share an identifier
        UnresolvedReferenceError: If a reference or variable cannot be resolved
        CycleError: If dependency edges form a cycle
    """
    variables = variables or {}

    known_ids: set[str] = set()
    for decl in declarations:
        ident = f'{decl.kind}.{decl.name}'
        if ident in known_ids:
            raise DuplicateResourceError(ident)
        known_ids.add(ident)

    specs: list[ResourceSpec] = []
    for index, decl in enumerate(declarations):
        ident = f'{decl.kind}.{decl.name}'
        interp = _Interpolator(ident, variables, known_ids)
        attributes = interp.rewrite(dict(decl.attributes))

        for dep in getattr(decl, 'depends_on', ()) or ():
            if dep not in known_ids:
                raise UnresolvedReferenceError(ident, dep)
            if dep == ident:
                raise CycleError([ident, ident])
            if dep not in interp.dependencies:
                interp.dependencies.append(dep)

        specs.append(ResourceSpec(
            kind=decl.kind,
            name=decl.name,
            attributes=attributes,
            dependencies=tuple(interp.dependencies),
            index=index,
        ))

    deps = {s.identifier: s.dependencies for s in specs}
    cycle = _find_cycle([s.identifier for s in specs], deps)
    if cycle:
        raise CycleError(cycle)

    graph = ResourceGraph(specs)
    logger.debug(f"Built resource graph with {len(graph)} resources")
    return graph
