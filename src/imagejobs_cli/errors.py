from __future__ import annotations

from typing import Optional


class ImageJobsError(Exception):
    pass


class InvalidInputError(ImageJobsError):
    pass


class NotFoundError(ImageJobsError):
    pass


class JobNotFoundError(NotFoundError):
    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job not found: {job_id}")


class HistoryNotFoundError(NotFoundError):
    def __init__(self, history_id: str):
        self.history_id = history_id
        super().__init__(f"History record not found: {history_id}")


class InvalidStateError(ImageJobsError):
    pass


class ProviderError(ImageJobsError):
    """Failure surfaced from the image-generation provider."""

    def __init__(self, message: str, status: Optional[int] = None):
        self.status = status
        super().__init__(message)


class AuthenticationError(ProviderError):
    pass


class PermissionDeniedError(ProviderError):
    pass


class ContentPolicyError(ProviderError):
    pass


class BadRequestError(ProviderError):
    pass


class RateLimitError(ProviderError):
    pass


class ProviderAPIError(ProviderError):
    pass


class IntegrityError(ImageJobsError):
    pass


class CodecError(ImageJobsError):
    pass
