class KeymeterError(Exception):
    """
    KeymeterError is the root of every error the sync pipeline raises on
    purpose. The HTTP layer is the only place that turns it into a
    status code and a response body.
    """

    status_code: "int" = 500

    def __init__(
        self,
        message: "str",
        status_code: "int | None" = None,
        code: "str | None" = None,
    ) -> "None":
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.code = code


class ConfigurationError(KeymeterError):
    """
    missing admin key, malformed key format, platform mismatch or an
    account that is not active.
    """

    status_code = 400


class AuthenticationError(KeymeterError):
    status_code = 401


class PermissionDeniedError(KeymeterError):
    status_code = 403


class VendorAPIError(KeymeterError):
    """
    raised when a vendor API call fails. status_code mirrors the vendor
    response where there was one.
    """

    status_code = 502


class StoreError(KeymeterError):
    status_code = 500


class StoreConflictError(StoreError):
    """
    raised by a store backend when an insert hits the
    (api_key_id, period_start) uniqueness rule.
    """

    status_code = 409


class NotFoundError(KeymeterError):
    status_code = 404
