from botocore.exceptions import ClientError

# Provider codes that mean "the thing is already gone".
NOT_FOUND_CODES = (
    "InvalidGroup.NotFound",
    "InvalidKeyPair.NotFound",
    "InvalidInstanceID.NotFound",
    "InvalidInstanceId.NotFound",
)


class GatewayError(Exception):
    """Raised when a cloud API or remote transfer call fails."""

    def __init__(self, operation: str, code: str, message: str):
        super().__init__(f"{operation} failed [{code}]: {message}")
        self.operation = operation
        self.code = code
        self.message = message

    @classmethod
    def from_client_error(cls, operation: str, error: ClientError) -> "GatewayError":
        details = error.response.get("Error", {})
        return cls(operation, details.get("Code", "Unknown"), details.get("Message", str(error)))


class TransferError(GatewayError):
    """Raised when remote copy or remote command execution fails."""


class RegionOwnershipError(RuntimeError):
    """Raised when two in-flight steps claim the same region."""


def error_code(error: ClientError) -> str:
    return error.response.get("Error", {}).get("Code", "")


def is_not_found(error: ClientError) -> bool:
    return error_code(error) in NOT_FOUND_CODES
