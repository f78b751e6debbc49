from mcp.types import INTERNAL_ERROR, INVALID_PARAMS


class GSCError(Exception):
    """Base error for account, auth and parameter failures surfaced to tool callers."""

    code = INTERNAL_ERROR


class InvalidParameter(GSCError):
    code = INVALID_PARAMS

    def __init__(self, field: str, message: str):
        self.field = field
        super().__init__(f"Invalid arguments: {field}: {message}")


class AccountNotFound(GSCError):
    code = INVALID_PARAMS

    def __init__(self, selector: str):
        self.selector = selector
        super().__init__(f"Account not found: {selector}")


class NoAccountsConfigured(GSCError):
    def __init__(self):
        super().__init__(
            "No accounts configured. Use register_account or set "
            "GSC_ACCOUNTS_JSON, GSC_ACCOUNTS_FILE or GSC_REFRESH_TOKEN"
        )


class TokenRefreshFailed(GSCError):
    def __init__(self, email: str, cause: BaseException):
        self.email = email
        self.cause = cause
        super().__init__(f"Failed to refresh token for {email}: {cause}")
