"""Source adapters, one per upstream."""

from .appstore_web import AppStoreWebAdapter
from .itunes_lookup import ItunesLookupAdapter
from .itunes_search import ItunesSearchAdapter

__all__ = [
    "AppStoreWebAdapter",
    "ItunesLookupAdapter",
    "ItunesSearchAdapter",
]
