"""Wiring for a ready-to-use reconciliation engine.

``build_engine`` is the single entry point that turns settings into
orchestrators. Both orchestrators share one ``NamedMutex`` so every
shared-parent mutation in the process is serialized per parent.
"""

from __future__ import annotations

from dataclasses import dataclass

import httpx

from reconciler.providers.provider_client import ProviderClient
from reconciler.provisioning.inmemory import (
    InMemoryApplianceAPI,
    InMemorySharedParentAPI,
    InMemoryStateStore,
)
from reconciler.provisioning.named_mutex import NamedMutex
from reconciler.provisioning.orchestrator import ApplianceAPI, ApplianceOrchestrator
from reconciler.provisioning.shared_parent import (
    SharedParentAPI,
    SharedParentOrchestrator,
)
from reconciler.provisioning.workflow import StateStore
from reconciler.settings import ReconcilerSettings


@dataclass(frozen=True, slots=True)
class Engine:
    """The orchestrators of one process and the lock registry they share."""

    appliances: ApplianceOrchestrator
    subnets: SharedParentOrchestrator
    mutex: NamedMutex
    state_store: StateStore


def build_engine(
    settings: ReconcilerSettings | None = None,
    *,
    state_store: StateStore | None = None,
    appliance_api: ApplianceAPI | None = None,
    shared_parent_api: SharedParentAPI | None = None,
    http_client: httpx.AsyncClient | None = None,
    mutex: NamedMutex | None = None,
) -> Engine:
    """Create orchestrators for the configured environment.

    Args:
        settings: Engine settings. Defaults to local-dev settings.
        state_store, appliance_api, shared_parent_api: Collaborator
            overrides. When None, local mode uses InMemory implementations;
            other environments build a ProviderClient for both APIs.
        http_client: Optional httpx client for the ProviderClient.
        mutex: Lock registry to share with other engines in the process.

    Raises:
        ValueError: If settings validation fails.
        ValueError: If a non-local environment has no state_store.
    """
    if settings is None:
        settings = ReconcilerSettings()

    errors = settings.validate()
    if errors:
        raise ValueError(
            "Reconciler settings validation failed:\n"
            + "\n".join(f"  - {e}" for e in errors)
        )

    if settings.is_local:
        if state_store is None:
            state_store = InMemoryStateStore()
        if appliance_api is None:
            appliance_api = InMemoryApplianceAPI()
        if shared_parent_api is None:
            shared_parent_api = InMemorySharedParentAPI()
    else:
        if state_store is None:
            raise ValueError(
                f"Non-local environment ({settings.environment}) requires an "
                "explicit state_store"
            )
        if appliance_api is None or shared_parent_api is None:
            client = ProviderClient.from_settings(settings, http_client=http_client)
            if appliance_api is None:
                appliance_api = client
            if shared_parent_api is None:
                shared_parent_api = client

    if mutex is None:
        mutex = NamedMutex()
    timeouts = settings.operation_timeouts()
    return Engine(
        appliances=ApplianceOrchestrator(
            api=appliance_api,
            state_store=state_store,
            timeouts=timeouts,
            settle_seconds=settings.settle_seconds,
        ),
        subnets=SharedParentOrchestrator(
            api=shared_parent_api,
            mutex=mutex,
            state_store=state_store,
        ),
        mutex=mutex,
        state_store=state_store,
    )
