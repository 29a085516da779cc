"""Pytest fixtures for domain tests.

These fixtures support testing the structsync bounded contexts:
- Shape Context
- Codec Context
- Registry Context
- Tracking Context
- Sync Context
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List

import pytest

from structsync.domains.registry.aggregates import StructureRegistry
from structsync.domains.shape.services import ShapeHasher
from structsync.domains.sync.services import SyncProtocol
from structsync.models.config_models import SyncConfig


# =============================================================================
# Payload Fixtures
# =============================================================================


def make_users_page(page: int, size: int = 3) -> Dict[str, Any]:
    """One page of a paginated user listing; every page has the same shape."""
    start = (page - 1) * size
    return {
        "page": page,
        "pageSize": size,
        "total": 50,
        "users": [
            {
                "id": start + i + 1,
                "name": f"User {start + i + 1}",
                "email": f"user{start + i + 1}@example.com",
                "active": (start + i) % 2 == 0,
            }
            for i in range(size)
        ],
    }


@pytest.fixture
def users_page() -> Dict[str, Any]:
    return make_users_page(1)


@pytest.fixture
def users_pages() -> List[Dict[str, Any]]:
    return [make_users_page(page) for page in range(1, 4)]


@pytest.fixture
def dashboard() -> Dict[str, Any]:
    """Dashboard stat block with a nested object and a temporal leaf."""
    return {
        "stats": {"totalUsers": 10, "activeUsers": 7, "ratio": 0.7},
        "title": "Overview",
        "updatedAt": datetime(2024, 1, 1, 10, 30, 0),
    }


# =============================================================================
# Component Fixtures
# =============================================================================


@pytest.fixture
def sync_config() -> SyncConfig:
    return SyncConfig()


@pytest.fixture
def hasher() -> ShapeHasher:
    return ShapeHasher()


@pytest.fixture
def colliding_hasher() -> ShapeHasher:
    """Hasher whose digest maps every shape to the same id."""
    return ShapeHasher(digest=lambda data: "0" * 64)


@pytest.fixture
def sender(sync_config: SyncConfig) -> SyncProtocol:
    return SyncProtocol(
        registry=StructureRegistry(registry_id="reg_sender"),
        config=sync_config,
    )


@pytest.fixture
def receiver(sync_config: SyncConfig) -> SyncProtocol:
    return SyncProtocol(
        registry=StructureRegistry(registry_id="reg_receiver"),
        config=sync_config,
    )


@pytest.fixture
def published_events() -> List[object]:
    return []
