from fastapi import HTTPException, status


class HomeBidException(HTTPException):
    def __init__(self, detail: str, status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR):
        super().__init__(status_code=status_code, detail=detail)


class NotFoundError(HomeBidException):
    def __init__(self, resource: str, resource_id: str | None = None):
        detail = f"{resource} not found"
        if resource_id:
            detail = f"{resource} '{resource_id}' not found"
        super().__init__(detail=detail, status_code=status.HTTP_404_NOT_FOUND)


class PermissionDeniedError(HomeBidException):
    def __init__(self, detail: str = "You do not have permission to perform this action"):
        super().__init__(detail=detail, status_code=status.HTTP_403_FORBIDDEN)


class BadRequestError(HomeBidException):
    def __init__(self, detail: str):
        super().__init__(detail=detail, status_code=status.HTTP_400_BAD_REQUEST)


class ConflictError(HomeBidException):
    def __init__(self, detail: str):
        super().__init__(detail=detail, status_code=status.HTTP_409_CONFLICT)


class ExternalServiceError(HomeBidException):
    """A collaborator call failed.

    ``declined`` is set only when the provider gave a definite refusal (a
    card decline). Timeouts and transport failures leave it unset: the call
    may have gone through, so a retry must reuse the same idempotency key.
    """

    def __init__(self, service: str, detail: str | None = None, declined: bool = False):
        self.service = service
        self.declined = declined
        msg = f"External service error: {service}"
        if detail:
            msg += f" - {detail}"
        super().__init__(detail=msg, status_code=status.HTTP_502_BAD_GATEWAY)


# ---------- Lifecycle errors ----------


class AmountBelowMinimumError(BadRequestError):
    def __init__(self, minimum):
        super().__init__(f"Bid amount must be at least {minimum}")


class BlindBiddingViolation(PermissionDeniedError):
    def __init__(self):
        super().__init__("You can only view bids on jobs you posted or have bid on")


class JobNotOpenError(ConflictError):
    def __init__(self, job_id: str):
        super().__init__(f"Job '{job_id}' is not accepting bids")


class DuplicateBidError(ConflictError):
    def __init__(self):
        super().__init__("You have already bid on this job")


class BidNoLongerAvailableError(ConflictError):
    def __init__(self, bid_status: str):
        super().__init__(f"Bid is no longer available (status: {bid_status})")


class ContractNotActiveError(ConflictError):
    def __init__(self, contract_status: str):
        super().__init__(f"Contract is not active (status: {contract_status})")


class MediationDeadlinePassedError(ConflictError):
    def __init__(self):
        super().__init__("Mediation deadline has passed")


class DisputeAlreadyResolvedError(ConflictError):
    def __init__(self):
        super().__init__("Dispute has already been resolved")
