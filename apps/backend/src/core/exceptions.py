class DomainError(Exception):
    """Base class for domain-specific errors."""

    pass


class ConfigurationError(DomainError):
    """Exception raised when a required setting (e.g. the API key) is missing."""

    pass


class InvalidRequestError(DomainError):
    """Exception raised when caller input cannot be processed."""

    pass


class UnknownTaskIdError(InvalidRequestError):
    """Exception raised when a stop request names an empty or unknown task id."""

    pass


class TaskNotFoundError(DomainError):
    """Exception raised when no analysis task exists for a document id."""

    def __init__(self, document_id: str) -> None:
        super().__init__(f"No analysis task for document '{document_id}'")
        self.document_id = document_id
