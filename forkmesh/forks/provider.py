"""Contract for components that create and delete isolated database copies."""
from __future__ import annotations

import abc
from typing import List

from forkmesh.core.models import Fork, ForkOptions


class ForkProvider(abc.ABC):
    """Creates, deletes and connects to forks of the primary database.

    Calls can take seconds to minutes. Implementations raise
    ``ForkProviderError`` on failure.
    """

    @abc.abstractmethod
    async def create_fork(self, options: ForkOptions) -> Fork:
        """Create a fork and return a handle whose ``id`` is a stable lookup key."""

    @abc.abstractmethod
    async def delete_fork(self, fork_id: str) -> None:
        """Delete a fork. Deleting an unknown fork is not an error for callers."""

    @abc.abstractmethod
    async def get_connection_string(self, fork_id: str) -> str:
        """Return credentials usable to open a pooled connection immediately."""

    @abc.abstractmethod
    async def list_services(self) -> List[Fork]:
        """List the services (primary and forks) visible to the provider."""
