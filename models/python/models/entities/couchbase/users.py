from typing import Optional, Literal
from clients.couchbase import BaseModelCouchbase, BaseCouchbaseEntityData


class UserData(BaseCouchbaseEntityData):
    email: str
    role: Literal["buyer", "seller", "admin"] = "buyer"
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    shop_name: Optional[str] = None
    avatar_url: Optional[str] = None

    # Bidding statistics, updated best-effort after accepted bids
    total_bids: int = 0
    won_auctions: int = 0


class User(BaseModelCouchbase[UserData]):
    _collection_name = "users"
