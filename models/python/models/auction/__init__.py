"""
Auction bidding engine: lifecycle, bid validation and ledger settlement.

The modules here are free of storage calls; ``models.operations`` binds them
to Couchbase.
"""
