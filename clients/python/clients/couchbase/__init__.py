from .config import (
    USERNAME,
    PASSWORD,
    DEFAULT_BUCKET_NAME,
    DEFAULT_SCOPE_NAME,
    HOST,
    PROTOCOL,
    auth,
    get_cluster,
    get_default_bucket,
    check_connection
)
from .keyspace import (
    Keyspace,
    get_keyspace,
)
from .base_model import (
    BaseModelCouchbase,
    BaseCouchbaseEntityData,
    DataT,
    T
)

from couchbase.exceptions import CASMismatchException, DocumentNotFoundException, DocumentExistsException
