from typing import Optional


class GenerationQueueError(Exception):
    status_code: int = 500
    code: str = "INTERNAL_ERROR"
    message: str = "Something went wrong, please try again"

    def __init__(self, message: Optional[str] = None, detail: Optional[str] = None):
        self.message = message or self.message
        self.detail = detail
        super().__init__(self.message)


class InsufficientCredits(GenerationQueueError):
    status_code = 402
    code = "INSUFFICIENT_CREDITS"
    message = "Insufficient credits"

    def __init__(self, required: int, available: int):
        self.required = required
        self.available = available
        super().__init__(f"Insufficient credits. Required: {required}, available: {available}")


class LedgerWriteFailed(GenerationQueueError):
    status_code = 500
    code = "LEDGER_WRITE_FAILED"
    message = "Failed to deduct credits"


class ProviderCallFailed(GenerationQueueError):
    status_code = 502
    code = "PROVIDER_FAILED"
    message = "Generation failed, please try again"


class RecordNotFound(GenerationQueueError):
    status_code = 404
    code = "NOT_FOUND"
    message = "Queue item not found"


class InvalidStateTransition(GenerationQueueError):
    status_code = 409
    code = "INVALID_STATE"
    message = "Cannot change item in this status"

    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(f"Cannot move item from '{current}' to '{target}'")


class PricingError(GenerationQueueError):
    status_code = 400
    code = "PRICING_ERROR"
    message = "Failed to calculate cost"


class PollTimeout(GenerationQueueError):
    status_code = 504
    code = "POLL_TIMEOUT"
    message = "Generation is still running, check the status again later"
