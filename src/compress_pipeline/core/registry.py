"""Credential registry: the single writer of credential usage and status."""

import threading
from datetime import date
from typing import Dict, Iterable, List, Optional, Union

from .logging_config import get_logger
from .models import (
    BestSelector,
    CapacityRow,
    Credential,
    CredentialSelector,
    CredentialStatus,
    InsufficientCapacity,
    NamedSelector,
    NotAvailable,
    NotFound,
)

SelectionResult = Union[Credential, NotAvailable, NotFound, InsufficientCapacity]


def is_new_period(last_reset: date, now: date) -> bool:
    """True when ``now`` falls in a different calendar month than ``last_reset``."""
    return (last_reset.year, last_reset.month) != (now.year, now.month)


def parse_selector(value: Union[str, NamedSelector, BestSelector, None]) -> CredentialSelector:
    """``"best"``/``"auto"``/None select by capacity; anything else names a credential."""
    if isinstance(value, (NamedSelector, BestSelector)):
        return value
    if value is None or value.lower() in ("best", "auto"):
        return BestSelector()
    return NamedSelector(name=value)


def _status_for(used_count: int, limit: int) -> CredentialStatus:
    return CredentialStatus.EXHAUSTED if used_count >= limit else CredentialStatus.ACTIVE


class CredentialRegistry:
    """
    Holds the credential set for a run.

    Credentials are immutable snapshots; every update replaces the stored
    snapshot under a lock, so concurrent success reports for the same
    credential are applied one at a time in arrival order.
    """

    def __init__(self, credentials: Iterable[Credential] = ()):
        self._lock = threading.Lock()
        self._credentials: Dict[str, Credential] = {}
        self._logger = get_logger("registry")
        for credential in credentials:
            if credential.name in self._credentials:
                raise ValueError(f"Duplicate credential name: {credential.name}")
            self._credentials[credential.name] = credential

    def __len__(self) -> int:
        return len(self._credentials)

    def __contains__(self, name: str) -> bool:
        return name in self._credentials

    def get(self, name: str) -> Credential:
        try:
            return self._credentials[name]
        except KeyError:
            raise KeyError(f"Credential '{name}' is not registered") from None

    def all(self) -> List[Credential]:
        """Snapshots in registration order."""
        return list(self._credentials.values())

    def names(self) -> List[str]:
        return list(self._credentials)

    def remaining(self, name: str) -> int:
        credential = self.get(name)
        if credential.status == CredentialStatus.INVALID:
            return 0
        return credential.remaining

    def capacity_table(self) -> List[CapacityRow]:
        return [
            CapacityRow(
                name=c.name,
                used=c.used_count,
                limit=c.limit,
                remaining=c.remaining,
                status=c.status,
            )
            for c in self._credentials.values()
        ]

    # --- Selection -----------------------------------------------------------

    def select_best(
        self, required_units: int = 1, now: Optional[date] = None
    ) -> Union[Credential, NotAvailable]:
        """
        Pick the usable credential with the most remaining capacity.

        Ties keep registration order. Returns :class:`NotAvailable` with the
        full capacity table when nothing can cover ``required_units``.
        """
        self.reset_all_if_new_period(now)

        best: Optional[Credential] = None
        for credential in self._credentials.values():
            if not credential.is_usable or credential.remaining < required_units:
                continue
            if best is None or credential.remaining > best.remaining:
                best = credential

        if best is None:
            return NotAvailable(
                required_units=required_units, capacities=self.capacity_table()
            )
        return best

    def select_named(
        self, name: str, required_units: int = 0, now: Optional[date] = None
    ) -> Union[Credential, NotFound, InsufficientCapacity]:
        """Look up ``name``; with ``required_units`` also check its capacity."""
        if name not in self._credentials:
            return NotFound(name=name, known_names=self.names())

        credential = self.reset_if_new_period(name, now)
        if required_units and self.remaining(name) < required_units:
            return InsufficientCapacity(
                name=name,
                required_units=required_units,
                remaining=self.remaining(name),
            )
        return credential

    def select(
        self,
        selector: CredentialSelector,
        required_units: int = 1,
        now: Optional[date] = None,
    ) -> SelectionResult:
        if isinstance(selector, NamedSelector):
            return self.select_named(selector.name, required_units, now)
        if isinstance(selector, BestSelector):
            return self.select_best(required_units, now)
        raise TypeError(f"Unknown credential selector: {selector!r}")

    # --- Mutation --------------------------------------------------------------

    def record_usage(self, name: str, new_used_count: int) -> Credential:
        """
        Apply the usage counter reported by the service after a success.

        The counter never decreases within a period and is clamped to the
        limit; status becomes exhausted exactly when the limit is reached.
        """
        with self._lock:
            current = self.get(name)
            used = min(max(current.used_count, new_used_count), current.limit)
            status = current.status
            if status != CredentialStatus.INVALID:
                status = _status_for(used, current.limit)
            updated = current.model_copy(update={"used_count": used, "status": status})
            self._credentials[name] = updated

        if updated.status == CredentialStatus.EXHAUSTED and current.status != updated.status:
            self._logger.warning(
                f"Credential '{name}' reached its monthly limit ({used}/{current.limit})"
            )
        return updated

    def mark_exhausted(self, name: str) -> Credential:
        """The service reported the quota as used up."""
        return self.record_usage(name, self.get(name).limit)

    def mark_invalid(self, name: str) -> Credential:
        with self._lock:
            current = self.get(name)
            updated = current.model_copy(update={"status": CredentialStatus.INVALID})
            self._credentials[name] = updated
        self._logger.warning(f"Credential '{name}' was rejected by the service")
        return updated

    def reset_if_new_period(self, name: str, now: Optional[date] = None) -> Credential:
        """Zero the usage of ``name`` when ``now`` starts a new billing month."""
        now = now or date.today()
        with self._lock:
            current = self.get(name)
            if not is_new_period(current.last_reset, now):
                return current
            updated = current.model_copy(
                update={
                    "used_count": 0,
                    "status": CredentialStatus.ACTIVE,
                    "last_reset": now,
                }
            )
            self._credentials[name] = updated

        self._logger.info(f"Monthly usage reset applied to credential '{name}'")
        return updated

    def reset_all_if_new_period(self, now: Optional[date] = None) -> bool:
        updated = False
        for name in self.names():
            before = self._credentials[name]
            if self.reset_if_new_period(name, now) is not before:
                updated = True
        return updated
