# errors.py

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class ResourceError(Exception):
    """Base class for every error raised by the Posts API core"""


class PolicyError(ResourceError):
    """The policy was used incorrectly (unknown field, read operation passed to validate, ...)"""


class OperationNotAllowedError(PolicyError):
    """The resource does not permit the requested operation"""

    def __init__(self, resource: str, operation: str) -> None:
        self.resource = resource
        self.operation = operation
        super().__init__(f"Operation '{operation}' is not allowed on {resource}")


class NotFoundError(ResourceError):
    """No stored entity with the given id, can raise 404"""

    def __init__(self, resource: str, id: Any) -> None:
        self.resource = resource
        self.id = id
        super().__init__(f"{resource} {id} not found")


@dataclass(frozen=True)
class Violation:
    path: str  # dotted, e.g. "slug" or "category.name"
    rule: str  # required, min_length, max_length, not_before, unknown_field, invalid
    message: str
    limit: Optional[Any] = None

    @property
    def nested(self) -> bool:
        return "." in self.path


class ValidationError(ResourceError):
    """A write payload broke one or more field constraints.

    :param violations: every violation found in the payload, in field order
    """

    def __init__(self, violations: List[Violation]) -> None:
        logger.debug(f"Validation failed:: {[(v.path, v.rule) for v in violations]}")

        self.violations = list(violations)
        super().__init__(self.messages)

    @property
    def messages(self) -> Dict[str, List[str]]:
        messages: Dict[str, List[str]] = {}
        for violation in self.violations:
            messages.setdefault(violation.path, []).append(violation.message)
        return messages

    @property
    def paths(self) -> List[str]:
        return [v.path for v in self.violations]

    def rules_for(self, path: str) -> List[str]:
        return [v.rule for v in self.violations if v.path == path]

    def __str__(self) -> str:
        return f"{self.messages}"


class NestedValidationError(ValidationError):
    """A nested resource (e.g. the category of a post) failed its own constraints"""
