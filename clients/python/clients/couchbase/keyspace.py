import uuid
from dataclasses import dataclass
from typing import Optional
from couchbase.result import MutationResult
from couchbase.n1ql import QueryScanConsistency
from couchbase.options import QueryOptions
from .config import get_cluster, DEFAULT_BUCKET_NAME, DEFAULT_SCOPE_NAME

@dataclass
class Keyspace:
    bucket_name: str
    scope_name: str
    collection_name: str

    @classmethod
    def from_string(cls, keyspace: str) -> 'Keyspace':
        parts = keyspace.split('.')
        if len(parts) != 3:
            raise ValueError(
                "Invalid keyspace format. Expected 'bucket_name.scope_name.collection_name', "
                f"got '{keyspace}'"
            )
        return cls(*parts)

    def __str__(self) -> str:
        return f"`{self.bucket_name}`.`{self.scope_name}`.`{self.collection_name}`"

    async def query(self, query: str, **kwargs) -> list:
        """Run a N1QL query; keyword arguments become named parameters ($name).

        Queries wait for pending mutations to be indexed so a read that
        follows a write on the same request sees it.
        """
        cluster = await get_cluster()
        query = query.replace("${keyspace}", str(self))
        options = QueryOptions(scan_consistency=QueryScanConsistency.REQUEST_PLUS)
        if kwargs:
            options = QueryOptions(
                named_parameters=kwargs,
                scan_consistency=QueryScanConsistency.REQUEST_PLUS,
            )
        result = cluster.query(query, options)
        return [row async for row in result]

    async def get_scope(self):
        cluster = await get_cluster()
        bucket = cluster.bucket(self.bucket_name)
        return bucket.scope(self.scope_name)

    async def get_collection(self):
        scope = await self.get_scope()
        return scope.collection(self.collection_name)

    async def insert(self, value: dict, key: Optional[str] = None, **kwargs) -> MutationResult:
        if key is None:
            key = str(uuid.uuid4())
        collection = await self.get_collection()
        return await collection.insert(key, value, **kwargs)

    async def upsert(self, key: str, value: dict, **kwargs) -> MutationResult:
        """Insert or update a document (idempotent write).

        Args:
            key: Document key (required for idempotency)
            value: Document value to store
            **kwargs: Additional options passed to collection.upsert()

        Returns:
            MutationResult from the upsert operation
        """
        collection = await self.get_collection()
        return await collection.upsert(key, value, **kwargs)

    async def remove(self, key: str, **kwargs) -> int:
        collection = await self.get_collection()
        result = await collection.remove(key, **kwargs)
        return result.cas


def get_keyspace(collection_name: str, scope_name: Optional[str] = None, bucket_name: Optional[str] = None) -> Keyspace:
    """
    Create a Keyspace instance with optional scope and bucket parameters.

    Args:
        collection_name: Name of the collection
        scope_name: Name of the scope (defaults to COUCHBASE_SCOPE or "_default")
        bucket_name: Name of the bucket (defaults to COUCHBASE_BUCKET)

    Returns:
        Keyspace instance
    """
    return Keyspace(
        bucket_name or DEFAULT_BUCKET_NAME,
        scope_name or DEFAULT_SCOPE_NAME,
        collection_name,
    )
