import asyncio

import structlog

from openai_exporter.client import OpenAIUsageClient
from openai_exporter.exceptions import UsageAPIError
from openai_exporter.models import UNKNOWN

logger = structlog.get_logger()


class ProjectNameResolver:
    """
    ProjectNameResolver maps project IDs to display names with a
    write-through cache that lives for the whole process. Names are
    assumed immutable once resolved.

    Lookups for the same ID are single-flight: concurrent callers
    wait on a per-ID lock instead of issuing duplicate requests.
    Failed lookups return "unknown" and are not cached, so a later
    call retries.
    """

    def __init__(self, client: "OpenAIUsageClient") -> "None":
        self._client = client
        # caches: project_id -> project_name
        self._names: "dict[str, str]" = {}
        self._key_locks: "dict[str, asyncio.Lock]" = {}

    def __len__(self) -> "int":
        return len(self._names)

    def cached(self, project_id: "str") -> "str | None":
        return self._names.get(project_id)

    async def resolve(self, project_id: "str") -> "str":
        """
        resolves project ID to human-readable name.
        """
        if project_id in ("", UNKNOWN):
            return UNKNOWN

        # fast path: check cache without lock
        name = self._names.get(project_id)
        if name is not None:
            return name

        lock = self._key_locks.setdefault(project_id, asyncio.Lock())
        async with lock:
            # re-check after acquiring lock (another task may have resolved it)
            name = self._names.get(project_id)
            if name is not None:
                return name

            try:
                data = await self._client.get_json(
                    f"{self._client.base_url}/projects/{project_id}"
                )
            except UsageAPIError as err:
                logger.warning(
                    "project_resolve_failed",
                    project_id=project_id,
                    error=str(err),
                )
                return UNKNOWN

            name = data.get("name")
            if not isinstance(name, str) or not name:
                logger.warning(
                    "project_resolve_failed",
                    project_id=project_id,
                    error="response has no name",
                )
                return UNKNOWN

            self._names[project_id] = name

        # the lock is only needed while a lookup is in flight
        self._key_locks.pop(project_id, None)
        return name
