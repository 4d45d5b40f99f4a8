"""ErrorClassifier interface for mapping failures to categories."""

from abc import ABC, abstractmethod

from llmkeypool.domain.models.system_error import ErrorCategory


class ErrorClassifier(ABC):
    """Strategy that maps an arbitrary exception to an ErrorCategory.

    Classification must be total: anything unrecognized is
    ``ErrorCategory.Unknown``.
    """

    @abstractmethod
    def classify(self, error: BaseException) -> ErrorCategory:
        """Classify ``error``."""
        pass
