"""
Organization directory - cached reads of the caller's organization and team.

These are the reads that go stale when the caller joins an organization;
the acceptance coordinator invalidates them through the shared QueryCache.
"""

import logging
from typing import Any, List, Optional

import httpx
from opentelemetry import trace

from plato.services.query_cache import QueryCache

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

CURRENT_ORGANIZATION_KEY = "/organizations/current"
TEAM_KEY = "/companies/team"


class NotSignedInError(Exception):
    """The backend rejected the caller's credentials."""


class OrganizationDirectory:
    """Service for reading the caller's organization membership."""

    def __init__(self, client: httpx.AsyncClient, cache: QueryCache):
        self.client = client
        self.cache = cache

    async def current_organization(self) -> Optional[dict]:
        """
        Get the caller's current organization.

        Returns:
            Organization JSON, or None if the caller has no organization

        Raises:
            NotSignedInError: If the caller is not signed in
            httpx.HTTPError: For transport failures or other error responses
        """
        with tracer.start_as_current_span("organization.current"):
            return await self.cache.fetch(
                CURRENT_ORGANIZATION_KEY,
                lambda: self._get_json(CURRENT_ORGANIZATION_KEY, missing_ok=True),
            )

    async def team_members(self) -> List[dict]:
        """Get the members of the caller's organization."""
        with tracer.start_as_current_span("organization.team"):
            members = await self.cache.fetch(
                TEAM_KEY,
                lambda: self._get_json(TEAM_KEY, missing_ok=True),
            )
            return members or []

    async def _get_json(self, path: str, missing_ok: bool = False) -> Any:
        response = await self.client.get(path)

        if response.status_code == 401:
            raise NotSignedInError()
        if response.status_code == 404 and missing_ok:
            logger.debug(f"{path} not found for caller")
            return None

        response.raise_for_status()
        return response.json()
