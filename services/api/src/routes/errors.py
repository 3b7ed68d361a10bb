from fastapi import HTTPException

from models.auction.rejections import Rejection, RejectionCode

_STATUS_BY_CODE = {
    RejectionCode.LISTING_NOT_FOUND: 404,
    RejectionCode.BID_NOT_FOUND: 404,
    RejectionCode.NOT_OWNER: 403,
    RejectionCode.CONCURRENCY_CONFLICT: 409,
}


def rejection_to_http(rejection: Rejection) -> HTTPException:
    """Business rejections become 400 unless they mean missing, forbidden or conflicting."""
    return HTTPException(
        status_code=_STATUS_BY_CODE.get(rejection.code, 400),
        detail=rejection.model_dump(mode="json"),
    )
