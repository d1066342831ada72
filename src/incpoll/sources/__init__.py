from .base import Connector, PagedSource
from .hubspot import HubSpotFormSubmissionsConnector
from .reddit import (
    RedditClient,
    RedditPostCommentsConnector,
    RedditSubredditLinksConnector,
    RedditUserActivityConnector,
)

__all__ = [
    "Connector",
    "PagedSource",
    "HubSpotFormSubmissionsConnector",
    "RedditClient",
    "RedditPostCommentsConnector",
    "RedditSubredditLinksConnector",
    "RedditUserActivityConnector",
]
