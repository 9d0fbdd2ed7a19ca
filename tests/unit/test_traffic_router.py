"""
Unit tests for the blue-green traffic router.

Tests cover:
- Unrouted collections resolving to themselves
- Switching and switching back
- Route documents and write group limits
"""

import pytest

from docplatform.docshift.deployment import ROUTING_COLLECTION, TrafficRouter
from docplatform.docshift.errors import DeploymentError
from docplatform.docshift.store import InMemoryDocumentStore


class TestTrafficRouter:
    """Tests for TrafficRouter."""

    @pytest.fixture
    def store(self):
        return InMemoryDocumentStore()

    @pytest.fixture
    def router(self, store):
        return TrafficRouter(store)

    @pytest.mark.asyncio
    async def test_unrouted_resolves_to_itself(self, router):
        """Without a route the logical name is the physical name."""
        assert await router.resolve("solarPanels") == "solarPanels"
        assert await router.routes() == {}

    @pytest.mark.asyncio
    async def test_switch(self, store, router):
        """A switch points each collection at its green copy."""
        await router.switch(
            {"solarPanels": "solarPanels__green_d1", "sites": "sites__green_d1"}, "d1"
        )

        assert await router.resolve("solarPanels") == "solarPanels__green_d1"
        route = store.snapshot(ROUTING_COLLECTION)["sites"]
        assert route["active"] == "sites__green_d1"
        assert route["previous"] == "sites"
        assert route["deployment_id"] == "d1"
        assert store.group_sizes == [2]
        assert router.stats == {"switches": 1}

    @pytest.mark.asyncio
    async def test_switch_exceeding_group(self):
        """More routes than one write group holds are refused."""
        router = TrafficRouter(InMemoryDocumentStore(max_group_size=1))

        with pytest.raises(DeploymentError, match="Cannot switch 2 collections"):
            await router.switch({"a": "a2", "b": "b2"}, "d1")

    @pytest.mark.asyncio
    async def test_switch_back(self, store, router):
        """Switching back restores the previous pointers of one deployment."""
        await router.switch({"solarPanels": "solarPanels__green_d1"}, "d1")
        await router.switch({"sites": "sites__green_d2"}, "d2")

        restored = await router.switch_back("d1")

        assert restored == ["solarPanels"]
        assert await router.resolve("solarPanels") == "solarPanels"
        assert await router.resolve("sites") == "sites__green_d2"
        route = store.snapshot(ROUTING_COLLECTION)["solarPanels"]
        assert route["previous"] == "solarPanels__green_d1"
        assert route["deployment_id"] == "d1:reverted"

    @pytest.mark.asyncio
    async def test_switch_back_unknown(self, router):
        """Nothing to restore for a deployment that never switched."""
        assert await router.switch_back("d404") == []
        assert router.stats == {"switches": 0}
