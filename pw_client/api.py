# =============================================================================
# PW Client -- HTTP API Client
# =============================================================================
#
# Authentication, join keys and read-only collection queries against the
# game's HTTP endpoints.  Block and room-type lookups are kept in an explicit
# BlockCache that callers may share between clients or bypass with
# skip_cache=True.
# =============================================================================

from __future__ import annotations

from typing import TYPE_CHECKING, Any
from urllib.parse import urlencode

import httpx

from ._logging import logger
from .constants import (
    CLIENT_VERSION,
    ENDPOINT_API,
    ENDPOINT_CLIENT,
    ENDPOINT_GAME_HTTP,
    HTTP_TIMEOUT,
    MINIMAP_COLLECTION,
)
from .errors import APIError
from .types import ApiClientOptions, GameClientSettings

if TYPE_CHECKING:
    from .client import GameClient


class BlockCache:
    """Results of the unauthenticated lookup endpoints.

    Attributes:
        blocks: Block list indexed by block id.
        blocks_by_name: Same blocks keyed by upper-cased palette id.
        room_types: Room types from ``/listroomtypes``.
        game_version: Version string from ``/version``.
    """

    def __init__(self) -> None:
        self.blocks: list[dict[str, Any] | None] | None = None
        self.blocks_by_name: dict[str, dict[str, Any]] | None = None
        self.room_types: list[str] = []
        self.game_version: str | None = None

    def clear(self) -> None:
        self.blocks = None
        self.blocks_by_name = None
        self.room_types = []
        self.game_version = None


def query_to_string(query: dict[str, Any] | None) -> str:
    """Render a collection query as extra ``&key=value`` parameters.

    ``{"filter": {"id": "abc"}, "sort": ["-created"]}`` becomes
    ``&filter=(id='abc')&sort=-created`` (URL-encoded).
    """
    if not query:
        return ""

    params: dict[str, str] = {}
    filters = query.get("filter")
    if filters:
        clauses = []
        for key, value in filters.items():
            if isinstance(value, bool):
                clauses.append(f"{key}={str(value).lower()}")
            elif isinstance(value, (int, float)):
                clauses.append(f"{key}={value}")
            else:
                clauses.append(f"{key}='{value}'")
        params["filter"] = "(" + " && ".join(clauses) + ")"

    sort = query.get("sort")
    if sort:
        params["sort"] = ",".join(sort) if isinstance(sort, (list, tuple)) else str(sort)

    return "&" + urlencode(params) if params else ""


class PWApiClient:
    """Async client for the game's HTTP API.

    Construct with an account token, or with ``email``/``password`` and call
    :meth:`authenticate` before any authenticated request.

    Args:
        token: Account token. Marks the client as logged in.
        email: Account email, used by :meth:`authenticate`.
        password: Account password, used by :meth:`authenticate`.
        options: Endpoint overrides.
        cache: Shared lookup cache (a private one by default).
        http: Preconfigured ``httpx.AsyncClient``; owned by the caller.
    """

    def __init__(
        self,
        token: str | None = None,
        *,
        email: str | None = None,
        password: str | None = None,
        options: ApiClientOptions | None = None,
        cache: BlockCache | None = None,
        http: httpx.AsyncClient | None = None,
    ) -> None:
        self._token = token
        self._email = email or ""
        self._password = password or ""
        self.options = options or ApiClientOptions()
        self.cache = cache if cache is not None else BlockCache()
        self.logged_in = token is not None

        self._owns_http = http is None
        self._http = http or httpx.AsyncClient(
            timeout=HTTP_TIMEOUT,
            headers={"user-agent": f"pw-client/{CLIENT_VERSION}"},
        )

    async def __aenter__(self) -> PWApiClient:
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    # -- Auth -----------------------------------------------------------------

    async def authenticate(self, email: str | None = None, password: str | None = None) -> dict[str, Any]:
        """Log in with email and password.

        The stored account details are used when none are given.
        Returns the raw response; on success the token is kept.
        """
        if email is None:
            if not self._email or not self._password:
                raise APIError("No email/password given.")
            email, password = self._email, self._password

        res = await self.request(
            f"{self.options.api}/api/collections/users/auth-with-password",
            {"identity": email, "password": password},
            override_url=self.options.api != ENDPOINT_API,
        )
        if isinstance(res, dict) and res.get("token"):
            self._token = res["token"]
            self.logged_in = True
            logger.info("Authenticated as %s", res.get("record", {}).get("username", email))
        return res

    async def get_join_key(self, room_type: str, room_id: str) -> str:
        """Fetch a single-use join key. Returns "" if the server gave none."""
        res = await self.request(
            f"{self.options.api}/api/joinkey/{room_type}/{room_id}",
            authenticated=True,
            override_url=self.options.api != ENDPOINT_API,
        )
        if isinstance(res, dict):
            return str(res.get("token") or "")
        return ""

    async def get_room_type(self) -> str:
        """First room type, fetched once and then served from the cache."""
        if not self.cache.room_types:
            await self.get_room_types()
        if not self.cache.room_types:
            raise APIError("Server returned no room types", "MISSING_ROOM_TYPES")
        return self.cache.room_types[0]

    # -- Lookups --------------------------------------------------------------

    async def get_room_types(self) -> list[str]:
        """Refresh the room types and the block list."""
        res = await self.request(
            f"{self.options.game_http}/listroomtypes",
            override_url=self.options.game_http != ENDPOINT_GAME_HTTP,
        )
        self.cache.room_types = list(res or [])
        await self.get_list_blocks(skip_cache=True)
        return self.cache.room_types

    async def get_version(self) -> str:
        """Refresh the game version and the block list."""
        res = await self.request(
            f"{self.options.game_http}/version",
            override_url=self.options.game_http != ENDPOINT_GAME_HTTP,
        )
        if not isinstance(res, dict) or "version" not in res:
            raise APIError(
                "Version is missing when trying to fetch current version.", "MISSING_VERSION"
            )
        self.cache.game_version = res["version"]
        await self.get_list_blocks(skip_cache=True)
        return self.cache.game_version

    async def get_list_blocks(self, skip_cache: bool = False, as_mapping: bool = False) -> Any:
        """Block list, as a list indexed by id or a dict keyed by palette id.

        Served from the cache unless *skip_cache* is set.
        """
        if not skip_cache:
            if not as_mapping and self.cache.blocks is not None:
                return self.cache.blocks
            if as_mapping and self.cache.blocks_by_name is not None:
                return self.cache.blocks_by_name

        res = await self.request(
            f"{self.options.game_http}/listblocks",
            override_url=self.options.game_http != ENDPOINT_GAME_HTTP,
        )
        if not res:
            raise APIError("Received no blocks when trying to fetch latest blocks", "MISSING_BLOCKS")

        # The endpoint is not sorted by id
        by_id: list[dict[str, Any] | None] = [None] * (max(b["Id"] for b in res) + 1)
        by_name: dict[str, dict[str, Any]] = {}
        for block in res:
            by_id[block["Id"]] = block
            by_name[block["PaletteId"].upper()] = block

        self.cache.blocks = by_id
        self.cache.blocks_by_name = by_name
        return by_name if as_mapping else by_id

    # -- Collections ----------------------------------------------------------

    async def get_public_worlds(
        self, page: int = 1, per_page: int = 10, query: dict[str, Any] | None = None
    ) -> dict[str, Any]:
        return await self._collection("worlds", page, per_page, query)

    async def get_owned_worlds(
        self, page: int = 1, per_page: int = 10, query: dict[str, Any] | None = None
    ) -> dict[str, Any]:
        """Worlds owned by the authenticated account."""
        return await self._collection("worlds", page, per_page, query, authenticated=True)

    async def get_players(
        self, page: int = 1, per_page: int = 10, query: dict[str, Any] | None = None
    ) -> dict[str, Any]:
        return await self._collection("users", page, per_page, query)

    async def get_public_world(self, world_id: str) -> dict[str, Any] | None:
        res = await self.get_public_worlds(1, 1, {"filter": {"id": world_id}})
        items = res.get("items") or []
        return items[0] if items else None

    async def get_player_by_name(self, username: str) -> dict[str, Any] | None:
        """Look up a player. The username is case sensitive."""
        res = await self.get_players(1, 1, {"filter": {"username": username}})
        items = res.get("items") or []
        return items[0] if items else None

    async def get_visible_worlds(self) -> dict[str, Any]:
        """Lobby listing for the first room type."""
        room_type = await self.get_room_type()
        return await self.request(
            f"{self.options.game_http}/room/list/{room_type}",
            override_url=self.options.game_http != ENDPOINT_GAME_HTTP,
        )

    def get_minimap_url(self, world: dict[str, Any]) -> str:
        return f"{self.options.api}/api/files/{MINIMAP_COLLECTION}/{world['id']}/{world['minimap']}"

    async def _collection(
        self,
        name: str,
        page: int,
        per_page: int,
        query: dict[str, Any] | None,
        *,
        authenticated: bool = False,
    ) -> dict[str, Any]:
        url = (
            f"{self.options.api}/api/collections/{name}/records"
            f"?page={page}&perPage={per_page}{query_to_string(query)}"
        )
        return await self.request(
            url,
            authenticated=authenticated,
            override_url=self.options.api != ENDPOINT_API,
        )

    # -- Game -----------------------------------------------------------------

    async def join_world(
        self,
        room_id: str,
        join_data: dict[str, Any] | None = None,
        settings: GameClientSettings | None = None,
    ) -> GameClient:
        """Create a game client on this API client and join *room_id*."""
        from .client import GameClient

        if settings is None:
            settings = GameClientSettings(endpoint=self.options.game_ws)
        game = GameClient(self, settings)
        return await game.join(room_id, join_data)

    # -- Transport ------------------------------------------------------------

    async def request(
        self,
        url: str,
        body: dict[str, Any] | str | None = None,
        *,
        authenticated: bool = False,
        override_url: bool = False,
    ) -> Any:
        """Send a GET (or a POST when *body* is given) and decode the reply.

        JSON replies are parsed, anything else is returned as bytes.

        Raises:
            APIError: For foreign URLs (unless *override_url*), 403, any
                status above 400, or transport failures.
        """
        if not override_url and not (
            url.startswith(ENDPOINT_API)
            or url.startswith(ENDPOINT_GAME_HTTP)
            or url.startswith(ENDPOINT_CLIENT + "/atlases/")
        ):
            raise APIError("URL given does not have the correct endpoint URL, this is for safety.")

        headers: dict[str, str] = {}
        if authenticated and self._token:
            headers["authorization"] = self._token

        try:
            if body is None:
                resp = await self._http.get(url, headers=headers)
            elif isinstance(body, str):
                headers["content-type"] = "application/json"
                resp = await self._http.post(url, content=body, headers=headers)
            else:
                resp = await self._http.post(url, json=body, headers=headers)
        except httpx.HTTPError as exc:
            raise APIError(f"Request to {url} failed: {exc}") from exc

        if resp.status_code == 403:
            raise APIError("Forbidden access - token invalid or unauthorised.", 403)

        if resp.headers.get("content-type", "").startswith("application/json"):
            try:
                data = resp.json()
            except ValueError as exc:
                raise APIError(f"Malformed JSON from {url}: {exc}", resp.status_code) from exc
        else:
            data = resp.content

        if resp.status_code > 400:
            message = data.get("message") if isinstance(data, dict) else None
            raise APIError(message or f"Request failed with status {resp.status_code}", resp.status_code, data)
        return data
