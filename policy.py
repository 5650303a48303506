# policy.py

import enum
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any, Dict, FrozenSet, List, NoReturn, Optional, Tuple, Type

from pydantic import BaseModel, ConfigDict, Field, create_model
from pydantic import ValidationError as PydanticValidationError

from config import get_settings
from errors import (
    NestedValidationError,
    OperationNotAllowedError,
    PolicyError,
    ValidationError,
    Violation,
)

logger = logging.getLogger(__name__)

# --- Operations and serialization groups ---

class Operation(str, enum.Enum):
    LIST_READ = "list-read"
    ITEM_READ = "item-read"
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"

    @property
    def is_write(self) -> bool:
        return self in (Operation.CREATE, Operation.UPDATE)


READ_COLLECTION = "read:collection"
READ_ITEM = "read:get"
WRITE = "write"

# A field takes part in an operation when its groups intersect the operation's groups
OPERATION_GROUPS: Dict[Operation, FrozenSet[str]] = {
    Operation.LIST_READ: frozenset({READ_COLLECTION}),
    Operation.ITEM_READ: frozenset({READ_COLLECTION, READ_ITEM}),
    Operation.CREATE: frozenset({WRITE}),
    Operation.UPDATE: frozenset({WRITE}),
    Operation.DELETE: frozenset(),
}

_MODEL_SUFFIXES = {
    Operation.LIST_READ: "Collection",
    Operation.ITEM_READ: "Item",
    Operation.CREATE: "Create",
    Operation.UPDATE: "Update",
}


def _operation(value: Any) -> Operation:
    try:
        return Operation(value)
    except ValueError:
        raise PolicyError(f"Unknown operation '{value}'") from None

# --- Constraints ---

@dataclass(frozen=True)
class Constraint:
    rule: str
    value: Any = None


def required() -> Constraint:
    return Constraint("required")

def min_length(limit: int) -> Constraint:
    return Constraint("min_length", limit)

def max_length(limit: int) -> Constraint:
    return Constraint("max_length", limit)

def read_only() -> Constraint:
    return Constraint("read_only")

def not_before(other_field: str) -> Constraint:
    return Constraint("not_before", other_field)

def nested(resource: str) -> Constraint:
    return Constraint("nested", resource)

def cascade_create() -> Constraint:
    return Constraint("cascade_create")

# --- Policy table types ---

@dataclass(frozen=True)
class Visibility:
    included: bool


@dataclass(frozen=True)
class FieldPolicy:
    name: str  # public (payload) name
    type: type
    groups: FrozenSet[str]
    constraints: Tuple[Constraint, ...] = ()
    attribute: Optional[str] = None  # storage attribute, when it differs from name
    nested: Optional["ResourcePolicy"] = None

    @property
    def attr(self) -> str:
        return self.attribute or self.name

    @property
    def required(self) -> bool:
        return self.constraint("required") is not None

    def constraint(self, rule: str) -> Optional[Constraint]:
        for constraint in self.constraints:
            if constraint.rule == rule:
                return constraint
        return None


@dataclass(frozen=True)
class ResourcePolicy:
    """Declarative field policy for one resource.

    Every projection (what a read returns) and every validator (what a write
    accepts) is derived from ``fields``; nothing else declares them.
    """

    name: str
    fields: Tuple[FieldPolicy, ...]
    operations: FrozenSet[Operation] = frozenset(Operation)
    reject_unknown_fields: bool = False

    def field(self, name: str) -> FieldPolicy:
        for field_policy in self.fields:
            if field_policy.name == name:
                return field_policy
        raise PolicyError(f"{self.name} has no field '{name}'")

    def is_allowed(self, operation: Any) -> bool:
        return _operation(operation) in self.operations

    def ensure_allowed(self, operation: Any) -> Operation:
        operation = _operation(operation)
        if operation not in self.operations:
            raise OperationNotAllowedError(self.name, operation.value)
        return operation

    def field_visibility(self, name: str, operation: Any) -> Visibility:
        field_policy = self.field(name)
        operation = _operation(operation)
        if operation not in self.operations:
            return Visibility(included=False)
        return Visibility(included=bool(field_policy.groups & OPERATION_GROUPS[operation]))

    def field_validation(self, name: str) -> List[Constraint]:
        return list(self.field(name).constraints)

    def included_fields(self, operation: Any) -> List[FieldPolicy]:
        operation = _operation(operation)
        return [f for f in self.fields if self.field_visibility(f.name, operation).included]

    def read_model(self, operation: Any) -> Type[BaseModel]:
        operation = self.ensure_allowed(operation)
        if operation not in (Operation.LIST_READ, Operation.ITEM_READ):
            raise PolicyError(f"'{operation.value}' has no read projection")
        return _read_model(self, operation)

    def write_model(self, operation: Any) -> Type[BaseModel]:
        operation = self.ensure_allowed(operation)
        if not operation.is_write:
            raise PolicyError(f"'{operation.value}' carries no write payload")
        return _write_model(self, operation)

    def project(self, entity: Any, operation: Any) -> Dict[str, Any]:
        """
        Strip a stored entity (object or mapping) down to the fields the
        operation exposes. Stored datetimes are naive UTC and come back
        carrying the UTC offset.
        """
        operation = self.ensure_allowed(operation)
        projection: Dict[str, Any] = {}
        for field_policy in self.included_fields(operation):
            value = _get(entity, field_policy)
            if field_policy.nested is not None and value is not None:
                value = field_policy.nested.project(value, operation)
            elif isinstance(value, datetime):
                value = _aware_utc(value)
            projection[field_policy.name] = value
        return projection

    def validate(self, payload: Any, operation: Any) -> Dict[str, Any]:
        """
        Validate a write payload and return it cleaned: every write field is
        present (absent optional ones as None), keys outside the write
        projection are dropped and datetimes are naive UTC.

        Raises ValidationError, or NestedValidationError when a nested
        resource is at fault. Nothing is persisted by this method.
        """
        operation = self.ensure_allowed(operation)
        if not operation.is_write:
            raise PolicyError(f"'{operation.value}' carries no write payload")

        try:
            instance = self.write_model(operation).model_validate(payload)
        except PydanticValidationError as exc:
            _raise_violations([_violation(error) for error in exc.errors()])

        data = _normalize(instance.model_dump())
        if isinstance(payload, Mapping):
            ignored = sorted(set(payload) - set(data))
            if ignored:
                logger.debug(f"{self.name} {operation.value}: ignoring fields {ignored}")

        violations = self._check_ordering(data)
        if violations:
            _raise_violations(violations)
        return data

    def _check_ordering(self, data: Dict[str, Any]) -> List[Violation]:
        violations = []
        for field_policy in self.fields:
            bound = field_policy.constraint("not_before")
            if bound is None:
                continue
            value, other = data.get(field_policy.name), data.get(bound.value)
            if value is not None and other is not None and value < other:
                violations.append(
                    Violation(
                        field_policy.name,
                        "not_before",
                        f"This value should not be earlier than {bound.value}.",
                        limit=bound.value,
                    )
                )
        return violations

# --- Derived pydantic models ---

@lru_cache(maxsize=None)
def _read_model(policy: ResourcePolicy, operation: Operation) -> Type[BaseModel]:
    definitions: Dict[str, Any] = {}
    for field_policy in policy.included_fields(operation):
        if field_policy.nested is not None:
            definitions[field_policy.name] = (Optional[field_policy.nested.read_model(operation)], None)
        else:
            definitions[field_policy.name] = (field_policy.type, ...)
    return create_model(f"{policy.name}{_MODEL_SUFFIXES[operation]}", __module__=__name__, **definitions)


@lru_cache(maxsize=None)
def _write_model(policy: ResourcePolicy, operation: Operation) -> Type[BaseModel]:
    definitions: Dict[str, Any] = {}
    for field_policy in policy.included_fields(operation):
        if field_policy.nested is not None:
            # A nested payload always describes a new entity to be created alongside the parent
            annotation: Any = field_policy.nested.write_model(Operation.CREATE)
        else:
            annotation = field_policy.type

        limits = {}
        for constraint in field_policy.constraints:
            if constraint.rule in ("min_length", "max_length"):
                limits[constraint.rule] = constraint.value
        if field_policy.required and field_policy.type is str:
            # a blank string is as good as missing
            limits.setdefault("min_length", 1)

        if field_policy.required:
            definitions[field_policy.name] = (annotation, Field(..., **limits))
        else:
            definitions[field_policy.name] = (Optional[annotation], Field(None, **limits))

    extra = "forbid" if policy.reject_unknown_fields else "ignore"
    return create_model(
        f"{policy.name}{_MODEL_SUFFIXES[operation]}",
        __config__=ConfigDict(extra=extra),
        __module__=__name__,
        **definitions,
    )

# --- Helpers ---

def _get(entity: Any, field_policy: FieldPolicy) -> Any:
    if isinstance(entity, Mapping):
        return entity.get(field_policy.attr, entity.get(field_policy.name))
    return getattr(entity, field_policy.attr, None)


def _aware_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _normalize(data: Dict[str, Any]) -> Dict[str, Any]:
    cleaned = {}
    for key, value in data.items():
        if isinstance(value, datetime):
            value = _naive_utc(value)
        elif isinstance(value, dict):
            value = _normalize(value)
        cleaned[key] = value
    return cleaned


def _violation(error: Dict[str, Any]) -> Violation:
    path = ".".join(str(part) for part in error["loc"])
    kind = error["type"]
    ctx = error.get("ctx") or {}

    # null or "" for a required field counts as missing, not as a type or length error
    if (
        kind == "missing"
        or (kind.endswith("_type") and kind != "model_type" and error.get("input") is None)
        or (kind == "string_too_short" and error.get("input") == "")
    ):
        return Violation(path, "required", "This value should not be blank.")
    if kind == "string_too_short":
        limit = ctx.get("min_length")
        return Violation(path, "min_length", f"This value is too short. It should have {limit} characters or more.", limit=limit)
    if kind == "string_too_long":
        limit = ctx.get("max_length")
        return Violation(path, "max_length", f"This value is too long. It should have {limit} characters or less.", limit=limit)
    if kind == "extra_forbidden":
        return Violation(path, "unknown_field", "This field is not writable.")
    return Violation(path, "invalid", error["msg"])


def _raise_violations(violations: List[Violation]) -> NoReturn:
    if any(v.nested for v in violations):
        raise NestedValidationError(violations)
    raise ValidationError(violations)

# --- Resource declarations ---

@lru_cache(maxsize=None)
def build_category_policy(reject_unknown_fields: bool = False) -> ResourcePolicy:
    return ResourcePolicy(
        name="Category",
        fields=(
            FieldPolicy("id", int, frozenset({READ_COLLECTION}), (read_only(),)),
            FieldPolicy(
                "name", str, frozenset({READ_COLLECTION, WRITE}),
                (required(), min_length(3), max_length(255)),
            ),
        ),
        operations=frozenset({Operation.LIST_READ, Operation.ITEM_READ, Operation.CREATE}),
        reject_unknown_fields=reject_unknown_fields,
    )


@lru_cache(maxsize=None)
def build_post_policy(server_managed_timestamps: bool = False, reject_unknown_fields: bool = False) -> ResourcePolicy:
    if server_managed_timestamps:
        timestamp_groups = frozenset({READ_ITEM})
        created_constraints: Tuple[Constraint, ...] = (read_only(),)
        updated_constraints: Tuple[Constraint, ...] = (read_only(),)
    else:
        timestamp_groups = frozenset({READ_ITEM, WRITE})
        created_constraints = (required(),)
        updated_constraints = (required(), not_before("createdAt"))

    return ResourcePolicy(
        name="Post",
        fields=(
            FieldPolicy("id", int, frozenset({READ_COLLECTION}), (read_only(),)),
            FieldPolicy("title", str, frozenset({READ_COLLECTION, WRITE}), (required(),)),
            FieldPolicy("slug", str, frozenset({READ_COLLECTION, WRITE}), (required(), min_length(5))),
            FieldPolicy("content", str, frozenset({READ_ITEM, WRITE}), (required(),)),
            FieldPolicy("createdAt", datetime, timestamp_groups, created_constraints, attribute="created_at"),
            FieldPolicy("updatedAt", datetime, timestamp_groups, updated_constraints, attribute="updated_at"),
            FieldPolicy(
                "category", dict, frozenset({READ_ITEM, WRITE}),
                (nested("Category"), cascade_create()),
                nested=build_category_policy(reject_unknown_fields),
            ),
        ),
        reject_unknown_fields=reject_unknown_fields,
    )


POST_POLICY = build_post_policy()
CATEGORY_POLICY = build_category_policy()


def field_visibility(field: str, operation: Any) -> Visibility:
    return POST_POLICY.field_visibility(field, operation)


def field_validation(field: str) -> List[Constraint]:
    return POST_POLICY.field_validation(field)

# --- FastAPI dependencies ---

def get_post_policy() -> ResourcePolicy:
    settings = get_settings()
    return build_post_policy(settings.server_managed_timestamps, settings.reject_unknown_fields)


def get_category_policy() -> ResourcePolicy:
    return build_category_policy(get_settings().reject_unknown_fields)
