"""Exception taxonomy shared by the order and payment services.

Every error carries the HTTP status the API layer renders it with, so the
services never import FastAPI.
"""


class EngineError(Exception):
    status_code = 400

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class NotFound(EngineError):
    status_code = 404


class InvalidState(EngineError):
    status_code = 400


class InsufficientStock(EngineError):
    status_code = 409

    def __init__(self, detail: str, product_id: str = None, available: int = None):
        super().__init__(detail)
        self.product_id = product_id
        self.available = available


class InvalidTransition(EngineError):
    status_code = 400

    def __init__(self, current, target):
        current_value = getattr(current, "value", current)
        target_value = getattr(target, "value", target)
        super().__init__(f"Cannot transition from {current_value} to {target_value}")
        self.current = current
        self.target = target


class Forbidden(EngineError):
    status_code = 403


class AlreadyProcessed(EngineError):
    status_code = 409


class InvalidSignature(EngineError):
    status_code = 400


class MerchantPaymentNotConfigured(EngineError):
    status_code = 400


class UpstreamFailure(EngineError):
    status_code = 502


class IdentifierExhausted(EngineError):
    status_code = 503
