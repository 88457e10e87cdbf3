"""Upstream wiki reader over the CROM GraphQL API.

Issues POST requests to the configured GraphQL endpoint (default
``https://apiv2.crom.avn.sh/graphql``) and parses responses into the typed
models in :mod:`wikimirror.models.page`.

Follows the usual adapter pattern: injected ``httpx.AsyncClient``,
``_throttle()`` pacing between requests, and a typed error for every failure
class.  This provider does **not** retry -- every call is one round trip and
the :class:`~wikimirror.services.rate_limit_safe_fetcher.RateLimitSafeFetcher`
owns retry, backoff and data protection.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Callable, TypeVar

import httpx
from pydantic import ValidationError

from wikimirror.interfaces.wiki_source_provider import IWikiSourceProvider
from wikimirror.models.fetch import RateLimitBudget
from wikimirror.models.page import (
    PageDetail,
    PageListing,
    PageNode,
    RevisionWindow,
    VoteWindow,
    parse_revision_window,
    parse_timestamp,
    parse_vote_window,
)
from wikimirror.utils.errors import (
    ProviderUnavailableError,
    RateLimitError,
    UpstreamQueryError,
)
from wikimirror.utils.logging import get_logger

_GRAPHQL_URL = "https://apiv2.crom.avn.sh/graphql"
_SITE_BASE_URL = "http://scp-wiki-cn.wikidot.com/"
_REQUEST_DELAY = 0.5  # seconds between requests
_REQUEST_TIMEOUT = 30.0
_DEFAULT_RETRY_AFTER = 60.0  # seconds when a 429 carries no retry-after

_T = TypeVar("_T")

_RATE_LIMIT_FIELDS = "rateLimit { cost remaining resetAt }"

_USER_FIELDS = "... on WikidotUser { displayName wikidotId }"

_ATTRIBUTION_FIELDS = (
    "attributions { type date order user { displayName "
    "... on UserWikidotNameReference { wikidotUser { displayName wikidotId } } } }"
)

_PAGE_BASIC_FIELDS = (
    "url wikidotId title rating voteCount category tags createdAt "
    "revisionCount commentCount parent { url } " + _ATTRIBUTION_FIELDS
)

_VOTE_FIELDS = f"userWikidotId direction timestamp anonKey user {{ {_USER_FIELDS} }}"

_REVISION_FIELDS = f"wikidotId timestamp type comment user {{ {_USER_FIELDS} }}"

_PAGE_INFO = "pageInfo { hasNextPage endCursor }"

_COUNT_QUERY = (
    "query CountPages($filter: PageQueryFilter) {"
    " aggregatePages(filter: $filter) { _count } "
    + _RATE_LIMIT_FIELDS
    + " }"
)

_LISTING_QUERY = (
    "query GetPagesBasic($filter: PageQueryFilter, $first: Int, $after: ID) {"
    " pages(filter: $filter, first: $first, after: $after) {"
    f" edges {{ node {{ url ... on WikidotPage {{ {_PAGE_BASIC_FIELDS} }} }} cursor }} {_PAGE_INFO}"
    " } "
    + _RATE_LIMIT_FIELDS
    + " }"
)

_DETAIL_QUERY = (
    "query GetPageDetail($url: URL!, $votesFirst: Int, $revisionsFirst: Int) {"
    " wikidotPage(url: $url) {"
    f" {_PAGE_BASIC_FIELDS} source textContent alternateTitles {{ title }}"
    f" revisions(first: $revisionsFirst) {{ edges {{ node {{ {_REVISION_FIELDS} }} }} {_PAGE_INFO} }}"
    f" fuzzyVoteRecords(first: $votesFirst) {{ edges {{ node {{ {_VOTE_FIELDS} }} }} {_PAGE_INFO} }}"
    " } "
    + _RATE_LIMIT_FIELDS
    + " }"
)

_VOTES_QUERY = (
    "query GetPageVotes($url: URL!, $first: Int, $after: ID) {"
    " wikidotPage(url: $url) { url"
    f" fuzzyVoteRecords(first: $first, after: $after) {{ edges {{ node {{ {_VOTE_FIELDS} }} }} {_PAGE_INFO} }}"
    " } "
    + _RATE_LIMIT_FIELDS
    + " }"
)

_REVISIONS_QUERY = (
    "query GetPageRevisions($url: URL!, $first: Int, $after: ID) {"
    " wikidotPage(url: $url) { url"
    f" revisions(first: $first, after: $after) {{ edges {{ node {{ {_REVISION_FIELDS} }} }} {_PAGE_INFO} }}"
    " } "
    + _RATE_LIMIT_FIELDS
    + " }"
)


class CromGraphQLProvider(IWikiSourceProvider):
    """Reads pages, votes and revisions from the CROM GraphQL API.

    Parameters
    ----------
    http_client:
        Injected ``httpx.AsyncClient`` for testability and connection pooling.
    endpoint:
        GraphQL endpoint URL.
    site_base_url:
        Only pages whose URL starts with this prefix are listed.
    request_delay:
        Minimum seconds between requests.
    timeout:
        Per-request timeout in seconds.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        endpoint: str = _GRAPHQL_URL,
        site_base_url: str = _SITE_BASE_URL,
        request_delay: float = _REQUEST_DELAY,
        timeout: float = _REQUEST_TIMEOUT,
        user_agent: str = "wikimirror/0.1",
    ) -> None:
        self._http = http_client
        self._endpoint = endpoint
        self._site_base_url = site_base_url
        self._request_delay = request_delay
        self._timeout = timeout
        self._user_agent = user_agent
        self._last_request_time: float = 0.0
        self._last_budget: RateLimitBudget | None = None
        self._logger = get_logger(__name__)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _throttle(self) -> None:
        """Enforce minimum delay between requests."""
        now = time.monotonic()
        elapsed = now - self._last_request_time
        if self._last_request_time > 0 and elapsed < self._request_delay:
            await asyncio.sleep(self._request_delay - elapsed)
        self._last_request_time = time.monotonic()

    @staticmethod
    def _retry_after(response: httpx.Response) -> float | None:
        raw = response.headers.get("retry-after")
        if raw is None:
            return None
        try:
            return max(0.0, float(raw))
        except ValueError:
            return _DEFAULT_RETRY_AFTER

    def _record_budget(self, payload: dict[str, Any]) -> None:
        raw = payload.get("rateLimit")
        if not isinstance(raw, dict):
            return
        self._last_budget = RateLimitBudget(
            cost=raw.get("cost"),
            remaining=raw.get("remaining"),
            reset_at=parse_timestamp(raw.get("resetAt")),
        )

    async def _graphql_request(
        self,
        query: str,
        variables: dict[str, Any],
        operation: str,
    ) -> dict[str, Any]:
        """POST one GraphQL document and return its ``data`` object.

        Raises
        ------
        RateLimitError
            HTTP 429, or any response carrying a ``retry-after`` header.
        ProviderUnavailableError
            Transport failure or HTTP 5xx.
        UpstreamQueryError
            Other non-200 status, a non-JSON body, or a GraphQL ``errors`` list.
        """
        await self._throttle()

        headers = {
            "User-Agent": self._user_agent,
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        try:
            response = await self._http.post(
                self._endpoint,
                json={"query": query, "variables": variables},
                headers=headers,
                timeout=self._timeout,
            )
        except httpx.HTTPError as exc:
            self._logger.warning("upstream_request_failed", operation=operation, error=str(exc))
            raise ProviderUnavailableError(
                f"{operation} request failed: {exc}", provider_name=self.get_provider_name()
            ) from exc

        retry_after = self._retry_after(response)
        if response.status_code == 429 or (retry_after is not None and response.status_code != 200):
            self._logger.warning(
                "upstream_rate_limited",
                operation=operation,
                status=response.status_code,
                retry_after=retry_after,
            )
            raise RateLimitError(
                f"{operation} throttled (HTTP {response.status_code})",
                provider_name=self.get_provider_name(),
                retry_after=retry_after if retry_after is not None else _DEFAULT_RETRY_AFTER,
            )

        if response.status_code >= 500:
            self._logger.warning("upstream_server_error", operation=operation, status=response.status_code)
            raise ProviderUnavailableError(
                f"{operation} failed with HTTP {response.status_code}",
                provider_name=self.get_provider_name(),
            )

        if response.status_code != 200:
            raise UpstreamQueryError(
                f"{operation} failed with HTTP {response.status_code}",
                provider_name=self.get_provider_name(),
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise UpstreamQueryError(
                f"{operation} returned a non-JSON body", provider_name=self.get_provider_name()
            ) from exc

        if payload.get("errors"):
            messages = [str(err.get("message", err)) for err in payload["errors"][:3]]
            self._logger.warning("upstream_graphql_errors", operation=operation, errors=messages)
            raise UpstreamQueryError(
                f"{operation}: {'; '.join(messages)}", provider_name=self.get_provider_name()
            )

        data = payload.get("data") or {}
        self._record_budget(data)
        return data

    def _parse(self, operation: str, parser: Callable[[Any], _T], payload: Any) -> _T:
        """Run *parser* over a response payload, reporting malformed data as ``UpstreamQueryError``."""
        try:
            return parser(payload)
        except (ValidationError, AttributeError, KeyError, TypeError, ValueError) as exc:
            self._logger.warning("upstream_payload_invalid", operation=operation, error=str(exc)[:300])
            raise UpstreamQueryError(
                f"{operation} returned a malformed payload: {exc}", provider_name=self.get_provider_name()
            ) from exc

    def _page_filter(self) -> dict[str, Any]:
        return {"url": {"startsWith": self._site_base_url}}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def count_pages(self) -> int:
        data = await self._graphql_request(
            _COUNT_QUERY, {"filter": self._page_filter()}, operation="count_pages"
        )
        return int((data.get("aggregatePages") or {}).get("_count") or 0)

    async def fetch_page_listing(self, first: int, after: str | None = None) -> PageListing:
        data = await self._graphql_request(
            _LISTING_QUERY,
            {"filter": self._page_filter(), "first": first, "after": after},
            operation="page_listing",
        )
        connection = data.get("pages") or {}
        nodes: list[PageNode] = []
        for edge in connection.get("edges") or []:
            node = (edge or {}).get("node") or {}
            if not node.get("url"):
                continue
            try:
                nodes.append(PageNode.from_graphql(node))
            except (ValidationError, KeyError, TypeError, ValueError):
                self._logger.warning("page_node_parse_failed", node=str(node)[:200])
        info = connection.get("pageInfo") or {}
        return PageListing(
            nodes=nodes,
            has_next_page=bool(info.get("hasNextPage")),
            end_cursor=info.get("endCursor"),
        )

    async def fetch_page_detail(
        self,
        url: str,
        votes_first: int,
        revisions_first: int,
    ) -> PageDetail | None:
        data = await self._graphql_request(
            _DETAIL_QUERY,
            {"url": url, "votesFirst": votes_first, "revisionsFirst": revisions_first},
            operation="page_detail",
        )
        node = data.get("wikidotPage")
        if not node:
            return None
        return self._parse("page_detail", PageDetail.from_graphql, node)

    async def fetch_votes(self, url: str, first: int, after: str | None = None) -> VoteWindow:
        data = await self._graphql_request(
            _VOTES_QUERY, {"url": url, "first": first, "after": after}, operation="page_votes"
        )
        page = data.get("wikidotPage") or {}
        return self._parse("page_votes", parse_vote_window, page.get("fuzzyVoteRecords"))

    async def fetch_revisions(
        self, url: str, first: int, after: str | None = None
    ) -> RevisionWindow:
        data = await self._graphql_request(
            _REVISIONS_QUERY,
            {"url": url, "first": first, "after": after},
            operation="page_revisions",
        )
        page = data.get("wikidotPage") or {}
        return self._parse("page_revisions", parse_revision_window, page.get("revisions"))

    @property
    def last_budget(self) -> RateLimitBudget | None:
        return self._last_budget

    def get_provider_name(self) -> str:
        """Return ``'crom_graphql'``."""
        return "crom_graphql"
