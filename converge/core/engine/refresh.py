"""
Refresh — fold what the provider reports into a planning snapshot.

Detects drift made outside the reconciler:

    resource gone, declared     → record dropped from the snapshot (plans a create)
    resource gone, undeclared   → record kept (its destroy removes it from state)
    desired attribute drifted   → observed value patched in (plans update/replace)

Only the snapshot copy is changed.  The state store is written by the
executor alone, once an operation actually succeeds.
"""

from __future__ import annotations

import logging
from collections.abc import Container, Mapping

from converge.adapters.base import Provider
from converge.core.errors import ProviderError
from converge.core.models.state import StateRecord
from converge.core.models.value import fingerprint
from converge.core.reliability.retry import RetryPolicy

logger = logging.getLogger(__name__)


def refresh_snapshot(
    snapshot: Mapping[str, StateRecord],
    provider: Provider,
    retry: RetryPolicy | None = None,
    declared: Container[str] | None = None,
) -> dict[str, StateRecord]:
    """Return a copy of ``snapshot`` reconciled with the provider's view.

    ``declared`` names the resources still in the desired state; when
    given, vanished resources outside it stay in the snapshot so their
    destroy still clears the record.

    Raises:
        ProviderError: if a resource cannot be read after retries.
    """
    retry = retry or RetryPolicy()
    refreshed: dict[str, StateRecord] = {}

    for name, record in snapshot.items():
        copy = record.model_copy(deep=True)
        resource_id = copy.resource_id
        if resource_id is None:
            refreshed[name] = copy
            continue

        def read(rid: str = resource_id):
            try:
                return provider.get(rid)
            except ProviderError:
                raise
            except Exception as e:
                raise ProviderError(f"Unexpected provider error: {e}", resource=name) from e

        observed = retry.call(read, f"refresh {name}")
        if observed is None:
            logger.warning("Drift: %s (id %s) no longer exists", name, resource_id)
            if declared is not None and name not in declared:
                refreshed[name] = copy
            continue

        drifted = [
            key for key, value in copy.desired.items()
            if key in observed and observed[key] != value
        ]
        for key in drifted:
            copy.desired[key] = observed[key]
        if drifted:
            copy.fingerprint = fingerprint(copy.kind, copy.source, copy.desired)
            logger.warning("Drift: %s changed outside converge: %s", name, ", ".join(sorted(drifted)))
        copy.attributes = observed
        refreshed[name] = copy

    return refreshed
