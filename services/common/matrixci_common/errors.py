class MatrixCIError(RuntimeError):
    pass


class ConfigError(MatrixCIError):
    pass


class CommandError(MatrixCIError):
    def __init__(self, message: str, returncode: int = -1, output: str = ""):
        super().__init__(message)
        self.returncode = returncode
        self.output = output


class SecretDecryptionError(MatrixCIError):
    pass


class SecretUnavailableError(MatrixCIError):
    """Raised when a consumer asks for a secret that was never decrypted."""

    def __init__(self, name: str, reason: str = "not provided"):
        super().__init__(f"secret_unavailable name={name} reason={reason}")
        self.name = name
        self.reason = reason


class PublishError(MatrixCIError):
    pass


class NotificationError(MatrixCIError):
    pass
