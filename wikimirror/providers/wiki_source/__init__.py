"""Upstream wiki source providers.

CromGraphQLProvider speaks the CROM GraphQL API; cost_estimator predicts
the rate-limit points a content fetch will consume.
"""

from wikimirror.providers.wiki_source.cost_estimator import estimate_page_cost
from wikimirror.providers.wiki_source.crom_graphql_provider import CromGraphQLProvider

__all__ = ["CromGraphQLProvider", "estimate_page_cost"]
