from __future__ import annotations

from enum import IntEnum


class ErrorCode(IntEnum):
    SUCCESS = 0

    # 400xx parameter / payload
    PARAMETER_ERROR = 40000
    INVALID_PARAMETER = 40001
    MISSING_REQUIRED_PARAMETER = 40002
    WEBHOOK_SIGNATURE_INVALID = 40010
    WEBHOOK_PAYLOAD_INVALID = 40011

    # 401xx auth
    AUTH_TOKEN_NOT_PROVIDED = 40100
    AUTH_TOKEN_INVALID = 40101
    AUTH_TOKEN_EXPIRED = 40102

    # 403xx permission / entitlement
    PERMISSION_DENIED = 40300
    MINUTES_QUOTA_EXCEEDED = 40310
    SUBSCRIPTION_NOT_CANCELABLE = 40311
    SUBSCRIPTION_NOT_REACTIVATABLE = 40312

    # 404xx not found
    USER_NOT_FOUND = 40400
    TRANSCRIPTION_NOT_FOUND = 40401
    SUBSCRIPTION_NOT_FOUND = 40402

    # 409xx conflict
    WHATSAPP_NUMBER_IN_USE = 40900

    # 413xx / 415xx files
    FILE_TOO_LARGE = 41300
    UNSUPPORTED_FILE_FORMAT = 41500

    # 500xx system
    SYSTEM_ERROR = 50000
    FILE_PROCESSING_ERROR = 50001
    FILE_UPLOAD_FAILED = 50002
    TRANSCRIPTION_SERVICE_FAILED = 50003
    MESSAGING_SERVICE_FAILED = 50004
    BILLING_PROVIDER_ERROR = 50200
    BILLING_PROVIDER_NOT_CONFIGURED = 50201
    STORAGE_UNAVAILABLE = 50300
