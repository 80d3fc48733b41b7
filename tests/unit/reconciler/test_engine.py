"""build_engine wiring tests."""

from __future__ import annotations

import asyncio

import httpx
import pytest

from reconciler.engine import build_engine
from reconciler.providers.provider_client import ProviderClient
from reconciler.provisioning.inmemory import (
    InMemoryApplianceAPI,
    InMemorySharedParentAPI,
    InMemoryStateStore,
)
from reconciler.provisioning.models import ApplianceRequest
from reconciler.provisioning.named_mutex import NamedMutex
from reconciler.settings import ReconcilerSettings


class TestBuildEngine:
    def test_local_defaults_use_in_memory_collaborators(self):
        engine = build_engine()
        assert isinstance(engine.state_store, InMemoryStateStore)
        assert isinstance(engine.appliances._api, InMemoryApplianceAPI)
        assert isinstance(engine.subnets._api, InMemorySharedParentAPI)

    def test_invalid_settings_raise(self):
        with pytest.raises(ValueError, match="validation failed"):
            build_engine(ReconcilerSettings(settle_seconds=-1))

    def test_non_local_requires_state_store(self):
        settings = ReconcilerSettings(environment="production", api_token="tok")
        with pytest.raises(ValueError, match="requires an explicit state_store"):
            build_engine(settings)

    def test_non_local_builds_provider_client(self):
        settings = ReconcilerSettings(environment="production", api_token="tok")
        http = httpx.AsyncClient(
            transport=httpx.MockTransport(lambda r: httpx.Response(200)),
        )

        engine = build_engine(
            settings, state_store=InMemoryStateStore(), http_client=http,
        )

        assert isinstance(engine.appliances._api, ProviderClient)
        assert engine.appliances._api is engine.subnets._api

    def test_settings_flow_into_orchestrator(self):
        engine = build_engine(ReconcilerSettings(
            delete_timeout_seconds=42, settle_seconds=0,
        ))
        assert engine.appliances._timeouts.delete_seconds == 42
        assert engine.appliances._settle_seconds == 0

    def test_shared_mutex_is_used(self):
        mutex = NamedMutex()
        engine = build_engine(mutex=mutex)
        assert engine.mutex is mutex
        assert engine.subnets._mutex is mutex

    @pytest.mark.asyncio
    async def test_engines_sharing_a_fresh_mutex_serialize_parent_mutations(self):
        mutex = NamedMutex()
        api = InMemorySharedParentAPI(mutate_delay=0.01)
        first = build_engine(mutex=mutex, shared_parent_api=api)
        second = build_engine(mutex=mutex, shared_parent_api=api)

        assert first.mutex is mutex
        assert second.mutex is mutex

        await asyncio.gather(
            first.subnets.create("parent-1", {}),
            second.subnets.create("parent-1", {}),
        )

        assert api.overlaps == 0
        assert len(api.parents["parent-1"]) == 2

    @pytest.mark.asyncio
    async def test_local_engine_runs_end_to_end(self):
        engine = build_engine(ReconcilerSettings(settle_seconds=0))

        state = await engine.appliances.create(
            ApplianceRequest(name="nosql-1", parameters={"a": "1"}),
        )
        child = await engine.subnets.create(state.id, {"netmask": 28})
        await engine.subnets.delete(state.id, child.id)
        await engine.appliances.delete(state.id)

        assert engine.state_store.records == {}
