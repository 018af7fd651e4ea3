"""Base exception shared by the points and orders services."""


class ServiceError(Exception):
    """A business failure with a stable code and an HTTP mapping.

    ``code`` is the name reported to collaborators (``{"error": code}``).
    """

    code: str = "ServiceError"
    status_code: int = 400

    def __init__(self, message: str = ""):
        self.message = message or self.code
        super().__init__(self.message)
