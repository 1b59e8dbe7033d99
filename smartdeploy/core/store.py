"""In-memory deployment store."""

from functools import lru_cache

from smartdeploy.models.deployment import DeploymentRecord
from smartdeploy.models.steps import HistoryEntry, utc_now


class InMemoryDeploymentStore:
    """Keeps deployment records and history in memory.

    Note: For production, this should be backed by a database.
    """

    def __init__(self) -> None:
        self._records: dict[str, DeploymentRecord] = {}
        self._history: dict[str, list[HistoryEntry]] = {}

    async def get_deployment(self, deployment_id: str) -> DeploymentRecord | None:
        """Get a deployment by ID."""
        record = self._records.get(deployment_id)
        return record.model_copy(deep=True) if record else None

    async def upsert_deployment(self, record: DeploymentRecord) -> DeploymentRecord:
        """Insert or replace a deployment."""
        record.updated_at = utc_now()
        self._records[record.id] = record.model_copy(deep=True)
        return record

    async def append_history(self, deployment_id: str, entry: HistoryEntry) -> None:
        self._history.setdefault(deployment_id, []).append(entry.model_copy(deep=True))

    async def get_history(self, deployment_id: str) -> list[HistoryEntry]:
        """History for a deployment, newest first."""
        entries = list(self._history.get(deployment_id, []))
        entries.sort(key=lambda e: e.timestamp, reverse=True)
        return entries

    async def list_for_user(self, user_id: str) -> list[DeploymentRecord]:
        records = [r for r in self._records.values() if r.owner_id == user_id]
        records.sort(key=lambda r: r.updated_at, reverse=True)
        return [r.model_copy(deep=True) for r in records]

    async def delete_deployment(self, deployment_id: str) -> bool:
        """Delete a deployment. History is kept."""
        if deployment_id in self._records:
            del self._records[deployment_id]
            return True
        return False

    def clear(self) -> None:
        self._records.clear()
        self._history.clear()


# Singleton instance
_store: InMemoryDeploymentStore | None = None


@lru_cache
def get_deployment_store() -> InMemoryDeploymentStore:
    """Get the deployment store singleton."""
    global _store
    if _store is None:
        _store = InMemoryDeploymentStore()
    return _store
