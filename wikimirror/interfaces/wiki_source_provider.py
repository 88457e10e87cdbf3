"""Abstract base class for the upstream wiki query API.

Defines the contract the sync phases use to read pages, per-page vote
records and per-page revision records.  The upstream is cursor-paginated,
and votes and revisions of the same page paginate independently.
Implementations raise ``RateLimitError`` when throttled,
``ProviderUnavailableError`` on network/server failures and
``UpstreamQueryError`` when the query itself is rejected.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from wikimirror.models.fetch import RateLimitBudget
from wikimirror.models.page import PageDetail, PageListing, RevisionWindow, VoteWindow


# Concrete implementation: CromGraphQLProvider (wikimirror/providers/wiki_source/)
# Speaks GraphQL over an injected httpx.AsyncClient.
class IWikiSourceProvider(ABC):
    """Contract for upstream wiki readers.

    All operations are async; every call is a single network round trip.
    """

    @abstractmethod
    async def count_pages(self) -> int:
        """Return the upstream's total page count for the configured site."""

    @abstractmethod
    async def fetch_page_listing(self, first: int, after: str | None = None) -> PageListing:
        """Fetch one window of lightweight page metadata.

        Parameters
        ----------
        first:
            Maximum number of pages in the window.
        after:
            Cursor returned as ``end_cursor`` by the previous window, or
            ``None`` to start from the beginning.
        """

    @abstractmethod
    async def fetch_page_detail(
        self,
        url: str,
        votes_first: int,
        revisions_first: int,
    ) -> PageDetail | None:
        """Fetch full page data plus the first vote and revision windows.

        Returns ``None`` when the page no longer exists upstream.
        """

    @abstractmethod
    async def fetch_votes(self, url: str, first: int, after: str | None = None) -> VoteWindow:
        """Fetch one window of a page's vote history."""

    @abstractmethod
    async def fetch_revisions(
        self, url: str, first: int, after: str | None = None
    ) -> RevisionWindow:
        """Fetch one window of a page's revision history."""

    @property
    @abstractmethod
    def last_budget(self) -> RateLimitBudget | None:
        """Rate-limit budget reported by the most recent response, if any."""

    @abstractmethod
    def get_provider_name(self) -> str:
        """Return a short identifier used in logs and error messages."""
