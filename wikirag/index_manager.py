"""Search index lifecycle: discovery, provisioning and mapping migration.

The active index is the newest index named ``<prefix><epoch>``. Selection is a
pure function of the existing index names so that concurrent callers that
raced to create an index all converge on the same one afterwards.

States: ABSENT -> PROVISIONING -> ACTIVE.
"""
import logging
import re
import time
from enum import Enum
from typing import Callable, Iterable, Optional

from wikirag.embedding import embedding_dimension
from wikirag.errors import RetrievalUnavailable
from wikirag.schemas import IndexDescriptor
from wikirag.search import VECTOR_FIELD, SearchStoreClient, index_mapping, vector_field_mapping

logger = logging.getLogger(__name__)


class IndexState(str, Enum):
    ABSENT = "absent"
    PROVISIONING = "provisioning"
    ACTIVE = "active"


def select_active_index(names: Iterable[str], prefix: str = "content_") -> Optional[str]:
    """Pick the most recent index following the ``<prefix><epoch>`` convention.

    Args:
        names: Existing index names.
        prefix: Naming-convention prefix.

    Returns:
        Optional[str]: Name with the greatest epoch, or None if none match.
    """
    pattern = re.compile(rf"^{re.escape(prefix)}(\d+)$")
    best: Optional[str] = None
    best_epoch = -1
    for name in names:
        m = pattern.match(name)
        if not m:
            continue
        epoch = int(m.group(1))
        # Equal epochs: fall back to lexicographic order to stay deterministic
        if epoch > best_epoch or (epoch == best_epoch and best is not None and name > best):
            best, best_epoch = name, epoch
    return best


class IndexManager:
    """Owns the active index for one search store."""

    def __init__(self, store: SearchStoreClient, prefix: str = "content_",
                 clock: Callable[[], float] = time.time):
        self.store = store
        self.prefix = prefix
        self.clock = clock
        self.state = IndexState.ABSENT

    def active_index_name(self) -> Optional[str]:
        """Name of the active index, or None if no index follows the convention."""
        name = select_active_index(self.store.list_indices(), self.prefix)
        if name is not None:
            self.state = IndexState.ACTIVE
        return name

    def describe(self, name: str) -> IndexDescriptor:
        """Read the mapping of ``name`` into a descriptor."""
        props = self.store.get_mapping(name)
        vec = props.get(VECTOR_FIELD) or {}
        if vec.get("type") == "dense_vector":
            dims = vec.get("dims")
            return IndexDescriptor(name=name, dimension=int(dims) if dims else None, vector_enabled=True)
        return IndexDescriptor(name=name, dimension=None, vector_enabled=False)

    def create_index(self, provider: str) -> IndexDescriptor:
        """Provision a fresh ``<prefix><epoch>`` index for ``provider``'s dimension."""
        dimension = embedding_dimension(provider)
        name = f"{self.prefix}{int(self.clock())}"
        self.state = IndexState.PROVISIONING
        try:
            self.store.create_index(name, index_mapping(dimension))
        except RetrievalUnavailable:
            self.state = IndexState.ABSENT
            raise
        self.state = IndexState.ACTIVE
        return IndexDescriptor(name=name, dimension=dimension, vector_enabled=True)

    def ensure_index(self, provider: str) -> IndexDescriptor:
        """Return the active index, creating or migrating it as needed.

        Idempotent; safe to call on every ingestion or query. An index that
        predates vector support gets the vector field added in place. That
        migration is best-effort: on failure a warning is logged and the
        descriptor reports ``vector_enabled=False`` so vectors are not written.

        Raises:
            RetrievalUnavailable: If the store cannot be reached.
        """
        name = self.active_index_name()
        if name is None:
            logger.info("No active index with prefix %s; provisioning one", self.prefix)
            return self.create_index(provider)

        desc = self.describe(name)
        if desc.vector_enabled:
            return desc

        dimension = embedding_dimension(provider)
        try:
            self.store.put_mapping(name, {VECTOR_FIELD: vector_field_mapping(dimension)})
        except RetrievalUnavailable as e:
            logger.warning("Could not add %s to index %s; vectors will not be indexed: %s",
                           VECTOR_FIELD, name, e)
            return desc
        logger.info("Added %s (dims=%d) to existing index %s", VECTOR_FIELD, dimension, name)
        return IndexDescriptor(name=name, dimension=dimension, vector_enabled=True)
