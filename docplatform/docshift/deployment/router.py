"""
Collection routing for blue-green deployments.

Readers resolve a logical collection name to the physical collection
currently serving it. A route document in ROUTING_COLLECTION holds the
active and previous physical names.

Invariants:
    - A switch moves every route of a deployment in one write group
    - A collection without a route resolves to itself
"""

from __future__ import annotations

import logging
import time
from typing import Any

from ..errors import DeploymentError
from ..store.base import DocumentStore

logger = logging.getLogger(__name__)

ROUTING_COLLECTION = "_deployment_routing"


class TrafficRouter:
    """Active-collection pointers, switched atomically."""

    def __init__(self, store: DocumentStore) -> None:
        self.store = store
        self._switches = 0

    async def resolve(self, collection: str) -> str:
        route = await self.store.get(ROUTING_COLLECTION, collection)
        if route is None:
            return collection
        return route.data.get("active", collection)

    async def routes(self) -> dict[str, dict[str, Any]]:
        page = await self.store.query(ROUTING_COLLECTION)
        return {doc.id: doc.data for doc in page.documents}

    async def switch(self, mapping: dict[str, str], deployment_id: str) -> float:
        """Point each logical collection at its new physical collection.

        Returns:
            Seconds the switch took

        Raises:
            DeploymentError: If the mapping exceeds one write group
        """
        if len(mapping) > self.store.max_group_size:
            raise DeploymentError(
                f"Cannot switch {len(mapping)} collections in one write group",
                details={"deployment_id": deployment_id},
            )
        started = time.monotonic()
        now = time.time()
        group = self.store.write_group()
        for logical, physical in mapping.items():
            previous = await self.resolve(logical)
            group.set(
                ROUTING_COLLECTION,
                logical,
                {
                    "collection": logical,
                    "active": physical,
                    "previous": previous,
                    "deployment_id": deployment_id,
                    "switched_at": now,
                },
            )
        await self.store.commit(group)
        self._switches += 1
        elapsed = time.monotonic() - started
        logger.info(
            "Traffic switched",
            extra={
                "deployment_id": deployment_id,
                "collections": sorted(mapping),
                "switch_seconds": elapsed,
            },
        )
        return elapsed

    async def switch_back(self, deployment_id: str) -> list[str]:
        """Restore the previous pointer of every route a deployment switched."""
        routes = await self.routes()
        restored = {
            logical: route["previous"]
            for logical, route in routes.items()
            if route.get("deployment_id") == deployment_id
        }
        if not restored:
            return []
        group = self.store.write_group()
        now = time.time()
        for logical, previous in restored.items():
            group.set(
                ROUTING_COLLECTION,
                logical,
                {
                    "collection": logical,
                    "active": previous,
                    "previous": routes[logical]["active"],
                    "deployment_id": f"{deployment_id}:reverted",
                    "switched_at": now,
                },
            )
        await self.store.commit(group)
        self._switches += 1
        logger.warning(
            "Traffic switched back",
            extra={"deployment_id": deployment_id, "collections": sorted(restored)},
        )
        return sorted(restored)

    @property
    def stats(self) -> dict[str, Any]:
        return {"switches": self._switches}
