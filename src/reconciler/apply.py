"""Change-set execution.

Runs a planned change-set against the provider registry. Entries are
dispatched in change-set order to a bounded worker pool; an entry starts
only once every entry it waits on has succeeded. A failure skips everything
downstream of it while independent branches carry on. State is written to
the store after each successful operation, before the entry counts as done.
"""

import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from common import retry_call
from reconciler.errors import PlanError, ProviderError, StateStoreError
from reconciler.graph import Reference, ResourceSpec, lookup_path
from reconciler.plan import CREATE, DELETE, NOOP, UPDATE, ChangeSet, ChangeSetEntry
from reconciler.registry import ProviderRegistry
from reconciler.state import ResourceState

logger = logging.getLogger(__name__)

SUCCEEDED = 'succeeded'
FAILED = 'failed'
SKIPPED = 'skipped'


@dataclass
class ResourceOutcome:
    """Result of one change-set entry.

    Attributes:
        identifier: Resource identifier
        action: Planned action
        status: succeeded, failed or skipped
        message: Error message, or the reason an entry was skipped
        attempts: Provider calls made (0 for no-op and skipped entries)
        blocked_by: Failed/skipped entry that caused a skip
    """
    identifier: str
    action: str
    status: str = SUCCEEDED
    message: str = ''
    attempts: int = 0
    blocked_by: Optional[str] = None
    started_at: Optional[float] = None
    completed_at: Optional[float] = None

    @property
    def duration(self) -> Optional[float]:
        if self.started_at and self.completed_at:
            return self.completed_at - self.started_at
        return None

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'id': self.identifier,
            'action': self.action,
            'status': self.status,
        }
        if self.message:
            d['message'] = self.message
        if self.attempts:
            d['attempts'] = self.attempts
        if self.blocked_by:
            d['blocked_by'] = self.blocked_by
        if self.duration is not None:
            d['duration'] = round(self.duration, 3)
        return d


@dataclass
class ApplyReport:
    """Per-resource outcomes of one apply run, in change-set order."""
    outcomes: dict[str, ResourceOutcome] = field(default_factory=dict)
    destroy: bool = False
    cancelled: bool = False
    started_at: Optional[float] = None
    completed_at: Optional[float] = None

    def record(self, outcome: ResourceOutcome) -> None:
        self.outcomes[outcome.identifier] = outcome

    def get(self, identifier: str) -> ResourceOutcome:
        return self.outcomes[identifier]

    def with_status(self, status: str) -> list[ResourceOutcome]:
        return [o for o in self.outcomes.values() if o.status == status]

    @property
    def succeeded(self) -> list[ResourceOutcome]:
        return self.with_status(SUCCEEDED)

    @property
    def failed(self) -> list[ResourceOutcome]:
        return self.with_status(FAILED)

    @property
    def skipped(self) -> list[ResourceOutcome]:
        return self.with_status(SKIPPED)

    @property
    def success(self) -> bool:
        """True when every entry succeeded."""
        return all(o.status == SUCCEEDED for o in self.outcomes.values())

    @property
    def duration(self) -> Optional[float]:
        if self.started_at and self.completed_at:
            return self.completed_at - self.started_at
        return None

    def summary(self) -> dict[str, int]:
        return {
            SUCCEEDED: len(self.succeeded),
            FAILED: len(self.failed),
            SKIPPED: len(self.skipped),
        }

    def to_dict(self) -> dict:
        return {
            'success': self.success,
            'destroy': self.destroy,
            'cancelled': self.cancelled,
            'duration_seconds': round(self.duration, 2) if self.duration is not None else None,
            'summary': self.summary(),
            'resources': [o.to_dict() for o in self.outcomes.values()],
        }


@dataclass
class ApplyEngine:
    """Executes change-sets through the provider registry.

    Attributes:
        registry: Provider lookup
        store: State store written after every successful operation
        max_retries: Retries after a transient ProviderError (default 3)
        backoff_base: First retry delay; doubles per retry
        backoff_max: Cap on a single retry delay
        timeout: Per provider call; overrun is a transient failure
        concurrency: Max entries in flight (1 = strictly sequential)
        cancel_event: Set to stop dispatching new entries
        sleep: Backoff delay function; defaults to waiting on cancel_event
            so cancel() cuts a backoff short
    """
    registry: ProviderRegistry
    store: Any
    max_retries: int = 3
    backoff_base: float = 1.0
    backoff_max: float = 30.0
    timeout: Optional[float] = 300.0
    concurrency: int = 1
    cancel_event: threading.Event = field(default_factory=threading.Event)
    sleep: Optional[Callable[[float], Any]] = None
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def cancel(self) -> None:
        """Stop dispatching; in-flight operations are allowed to finish."""
        logger.warning("Cancellation requested, waiting for in-flight operations")
        self.cancel_event.set()

    def apply(self, changeset: ChangeSet) -> ApplyReport:
        """Execute changeset and return the per-resource report.

        Raises:
            StateStoreError: If state could not be persisted; dispatch stops,
                in-flight work drains, and the partial report is attached
                to the exception as .report
        """
        report = ApplyReport(destroy=changeset.destroy, started_at=time.time())
        entries = list(changeset)
        known = {e.identifier for e in entries}
        status: dict[str, str] = {}
        pending: list[ChangeSetEntry] = list(entries)
        in_flight: dict[Future, ChangeSetEntry] = {}
        fatal: Optional[StateStoreError] = None

        def _settle(outcome: ResourceOutcome) -> None:
            status[outcome.identifier] = outcome.status
            report.record(outcome)

        with ThreadPoolExecutor(max_workers=self.concurrency, thread_name_prefix='apply') as pool:
            while pending or in_flight:
                with self._lock:
                    if fatal is None and not self.cancel_event.is_set():
                        for entry in list(pending):
                            waits_on = [d for d in entry.depends_on if d in known]
                            blocker = next((d for d in waits_on if status.get(d) in (FAILED, SKIPPED)), None)
                            if blocker is not None:
                                pending.remove(entry)
                                _settle(self._skipped(entry, f"dependency '{blocker}' {status[blocker]}", blocker))
                                continue
                            if len(in_flight) >= self.concurrency:
                                continue
                            if all(status.get(d) == SUCCEEDED for d in waits_on):
                                pending.remove(entry)
                                in_flight[pool.submit(self._run_entry, entry)] = entry

                if not in_flight:
                    if fatal is not None or self.cancel_event.is_set() or not pending:
                        break
                    raise PlanError(
                        f"Change-set cannot make progress; waiting entries: "
                        f"{', '.join(e.identifier for e in pending)}"
                    )

                done, _ = wait(list(in_flight), return_when=FIRST_COMPLETED)
                with self._lock:
                    for future in done:
                        entry = in_flight.pop(future)
                        try:
                            _settle(future.result())
                        except StateStoreError as e:
                            logger.error(f"[{entry.action}] {entry.identifier}: state store failure: {e}")
                            _settle(ResourceOutcome(
                                identifier=entry.identifier,
                                action=entry.action,
                                status=FAILED,
                                message=f"state store error: {e}",
                            ))
                            if fatal is None:
                                fatal = e

        if pending:
            reason = 'run aborted: state store error' if fatal is not None else 'run cancelled'
            report.cancelled = fatal is None
            for entry in pending:
                _settle(self._skipped(entry, reason))

        # Change-set order, independent of completion order
        report.outcomes = {e.identifier: report.outcomes[e.identifier] for e in entries}
        report.completed_at = time.time()

        if fatal is not None:
            fatal.report = report  # type: ignore[attr-defined]
            raise fatal

        summary = report.summary()
        logger.info(f"Apply complete: {summary[SUCCEEDED]} succeeded, {summary[FAILED]} failed, "
                    f"{summary[SKIPPED]} skipped")
        return report

    def _skipped(self, entry: ChangeSetEntry, reason: str, blocker: Optional[str] = None) -> ResourceOutcome:
        logger.warning(f"[{entry.action}] {entry.identifier}: skipped ({reason})")
        now = time.time()
        return ResourceOutcome(
            identifier=entry.identifier,
            action=entry.action,
            status=SKIPPED,
            message=reason,
            blocked_by=blocker,
            started_at=now,
            completed_at=now,
        )

    def _resolve(self, spec: ResourceSpec) -> ResourceSpec:
        """Resolve references from the applied state of dependencies.

        Raises:
            ProviderError: (permanent) if a referenced value is not available
        """
        def _lookup(ref: Reference) -> Any:
            state = self.store.get(ref.target)
            if state is None:
                raise ProviderError(f"Referenced resource '{ref.target}' has no applied state")
            if not ref.path:
                return state.external_id
            try:
                return lookup_path(state.attributes, ref.path)
            except KeyError:
                raise ProviderError(f"Reference {ref} not found in state of '{ref.target}'")

        return spec.resolve(_lookup)

    def _check_state(self, entry: ChangeSetEntry, state: Any) -> ResourceState:
        if not isinstance(state, ResourceState):
            raise ProviderError(
                f"Provider for '{entry.kind}' returned {type(state).__name__}, expected ResourceState"
            )
        if state.identifier != entry.identifier:
            raise ProviderError(
                f"Provider returned state for '{state.identifier}' while applying '{entry.identifier}'"
            )
        return state

    def _call(self, entry: ChangeSetEntry, outcome: ResourceOutcome, fn: Callable[[], Any]) -> Any:
        def _count(attempt: int) -> None:
            outcome.attempts = attempt

        return retry_call(
            fn,
            max_retries=self.max_retries,
            backoff_base=self.backoff_base,
            backoff_max=self.backoff_max,
            timeout=self.timeout,
            label=f'[{entry.action}] {entry.identifier}',
            sleep=self.sleep or self.cancel_event.wait,
            on_attempt=_count,
            stop=self.cancel_event,
        )

    def _run_entry(self, entry: ChangeSetEntry) -> ResourceOutcome:
        """Run one entry on a worker thread.

        Provider failures become a failed outcome; StateStoreError propagates.
        """
        outcome = ResourceOutcome(identifier=entry.identifier, action=entry.action, started_at=time.time())
        if entry.action == NOOP:
            outcome.message = 'unchanged'
            outcome.completed_at = time.time()
            return outcome

        logger.info(f"[{entry.action}] {entry.identifier}")
        try:
            provider = self.registry.lookup(entry.kind)
            if entry.action == CREATE:
                spec = self._resolve(entry.spec)
                state = self._check_state(entry, self._call(entry, outcome, lambda: provider.create(spec)))
                state.dependencies = list(spec.dependencies)
                self.store.put(entry.identifier, state)
            elif entry.action == UPDATE:
                spec = self._resolve(entry.spec)
                state = self._check_state(
                    entry, self._call(entry, outcome, lambda: provider.update(spec, entry.prior)))
                state.dependencies = list(spec.dependencies)
                if state.external_id is None:
                    state.external_id = entry.prior.external_id
                self.store.put(entry.identifier, state)
            elif entry.action == DELETE:
                self._call(entry, outcome, lambda: provider.delete(entry.prior))
                self.store.delete(entry.identifier)
            else:
                raise ProviderError(f"Unknown action '{entry.action}'")
        except StateStoreError:
            raise
        except ProviderError as e:
            outcome.status = FAILED
            outcome.message = f"{e.kind}: {e}"
            logger.error(f"[{entry.action}] {entry.identifier} failed after {outcome.attempts} attempt(s): {e}")
        except Exception as e:
            outcome.status = FAILED
            outcome.message = f"permanent: {type(e).__name__}: {e}"
            logger.exception(f"[{entry.action}] {entry.identifier}: unexpected provider error")
        outcome.completed_at = time.time()
        if outcome.status == SUCCEEDED:
            logger.info(f"[{entry.action}] {entry.identifier}: done")
        return outcome
