"""
Public API for the pydrel package.

Most users will interact with:

* :class:`RelationalModel` as the base class for related models, with
  relations declared in its ``relations`` list.
* :class:`Collection` for ordered groups of models (and as the backing
  store of ``HasMany`` relations).
* :data:`store` for identity lookups, model scopes and ``reset()``.
* :class:`HttpFetcher` when related instances live behind an HTTP API.
"""

from .events import Events
from .queues import (
    Semaphore,
    BlockingQueue,
    event_queue,
)
from .collection import Collection
from .store import (
    DuplicateIdentity,
    Store,
    RelationTypeStore,
    store,
    relation_type_store,
)
from .relation import (
    InvalidConfiguration,
    RelationSpec,
    Relation,
    HasOne,
    HasMany,
)
from .fetch import (
    FetchError,
    Fetcher,
    HttpFetcher,
)
from .base_class import RelationalModel
from .version import __version__ as __version__

__all__ = [
    # events
    "Events",
    # queues
    "Semaphore",
    "BlockingQueue",
    "event_queue",
    # collection
    "Collection",
    # store
    "DuplicateIdentity",
    "Store",
    "RelationTypeStore",
    "store",
    "relation_type_store",
    # relation
    "InvalidConfiguration",
    "RelationSpec",
    "Relation",
    "HasOne",
    "HasMany",
    # fetch
    "FetchError",
    "Fetcher",
    "HttpFetcher",
    # base_class
    "RelationalModel",
    # version
    "__version__",
]
