import secrets
from dataclasses import dataclass

from fastapi import Depends, Request

from plato.services.plato_api import create_api_client
from plato.services.query_cache import QueryCache, QueryCacheRegistry

CLIENT_ID_COOKIE = "plato_client_id"

# Caller credentials forwarded to the Plato backend
FORWARDED_HEADERS = ("cookie", "authorization")


@dataclass(frozen=True)
class ClientContext:
    """Identifies the browser client whose local state we hold."""
    client_id: str
    is_new: bool

    @property
    def pending_invitation_slot(self) -> str:
        return f"pendingInvitation:{self.client_id}"


def get_client_context(request: Request) -> ClientContext:
    """
    Read the client id cookie, minting a new id when absent.

    Routes must set the cookie on their response when `is_new` is true.
    """
    client_id = request.cookies.get(CLIENT_ID_COOKIE)
    if client_id:
        return ClientContext(client_id=client_id, is_new=False)
    return ClientContext(client_id=secrets.token_urlsafe(16), is_new=True)


async def get_api_client(request: Request):
    """Yields a backend client carrying the caller's credentials."""
    headers = {
        name: request.headers[name]
        for name in FORWARDED_HEADERS
        if name in request.headers
    }
    client = create_api_client(headers=headers)
    try:
        yield client
    finally:
        await client.aclose()


def get_cache_registry(request: Request) -> QueryCacheRegistry:
    return request.app.state.query_caches


def get_query_cache(
    client: ClientContext = Depends(get_client_context),
    caches: QueryCacheRegistry = Depends(get_cache_registry),
) -> QueryCache:
    """
    The calling client's query cache.

    Clients without a cookie yet get a throwaway cache, so requests that never
    send the cookie back do not grow the registry.
    """
    if client.is_new:
        return QueryCache()
    return caches.for_client(client.client_id)
