"""Feed domain exports."""

from .exceptions import FeedError, InvalidFeedItem, InvalidFeedRequest  # noqa: F401
from .models import FeedItem, FeedViewerContext, PresortedItem, PresortedSegment  # noqa: F401
from .service import FeedService  # noqa: F401
