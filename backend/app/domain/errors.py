from dataclasses import dataclass
from typing import ClassVar, List


@dataclass
class DomainError(Exception):
    detail: str
    title: str = "Domain Error"
    type: str = "https://example.com/problems/domain-error"
    errors: List[dict] | None = None

    status_code: ClassVar[int] = 400

    def __str__(self) -> str:
        return self.detail


@dataclass
class ValidationError(DomainError):
    title: str = "Validation Error"
    type: str = "https://example.com/problems/validation-error"

    status_code: ClassVar[int] = 422


@dataclass
class NotFoundError(DomainError):
    title: str = "Not Found"
    type: str = "https://example.com/problems/not-found"

    status_code: ClassVar[int] = 404


@dataclass
class ConflictError(DomainError):
    title: str = "Conflict"
    type: str = "https://example.com/problems/conflict"

    status_code: ClassVar[int] = 409


@dataclass
class CapacityError(ConflictError):
    title: str = "Capacity Exceeded"
    type: str = "https://example.com/problems/capacity-exceeded"


@dataclass
class DispatchLockedError(ConflictError):
    title: str = "Dispatch Locked"
    type: str = "https://example.com/problems/dispatch-locked"


@dataclass
class VersionConflictError(ConflictError):
    title: str = "Version Conflict"
    type: str = "https://example.com/problems/version-conflict"


@dataclass
class BatchApplyError(DomainError):
    """Persistence failure while applying a batch; the batch was rolled back."""

    title: str = "Batch Apply Failed"
    type: str = "https://example.com/problems/batch-apply-failed"

    status_code: ClassVar[int] = 500
