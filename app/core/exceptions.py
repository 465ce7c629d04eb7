from __future__ import annotations

from app.i18n.codes import ErrorCode


class BusinessError(Exception):
    status_code = 200
    retryable = False

    def __init__(self, code: ErrorCode, **kwargs: str) -> None:
        super().__init__(str(code))
        self.code = code
        self.kwargs = kwargs


class AccountNotFoundError(BusinessError):
    status_code = 404

    def __init__(self, account_id: str) -> None:
        super().__init__(ErrorCode.USER_NOT_FOUND)
        self.account_id = account_id


class StorageUnavailableError(BusinessError):
    """Transient storage failure; callers may retry with backoff."""

    status_code = 503
    retryable = True

    def __init__(self, detail: str = "") -> None:
        super().__init__(ErrorCode.STORAGE_UNAVAILABLE)
        self.detail = detail


class WebhookSignatureError(BusinessError):
    status_code = 400

    def __init__(self) -> None:
        super().__init__(ErrorCode.WEBHOOK_SIGNATURE_INVALID)


class WebhookPayloadError(BusinessError):
    status_code = 400

    def __init__(self, detail: str) -> None:
        super().__init__(ErrorCode.WEBHOOK_PAYLOAD_INVALID, detail=detail)


class BillingProviderError(BusinessError):
    status_code = 502

    def __init__(self, detail: str) -> None:
        super().__init__(ErrorCode.BILLING_PROVIDER_ERROR, detail=detail)
