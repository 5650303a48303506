# test_policy.py

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from errors import (
    NestedValidationError,
    OperationNotAllowedError,
    PolicyError,
    ValidationError,
)
from policy import (
    CATEGORY_POLICY,
    POST_POLICY,
    Constraint,
    Operation,
    build_post_policy,
    field_validation,
    field_visibility,
)


def _payload(**overrides):
    payload = {
        "title": "Hello world",
        "slug": "hello-world",
        "content": "A first post.",
        "createdAt": "2024-01-01T10:00:00",
        "updatedAt": "2024-01-02T10:00:00",
    }
    payload.update(overrides)
    return payload

# --- Visibility ---

VISIBILITY = {
    # field: (list-read, item-read, write)
    "id": (True, True, False),
    "title": (True, True, True),
    "slug": (True, True, True),
    "content": (False, True, True),
    "createdAt": (False, True, True),
    "updatedAt": (False, True, True),
    "category": (False, True, True),
}

@pytest.mark.parametrize("field", sorted(VISIBILITY))
def test_visibility_table(field):
    list_read, item_read, write = VISIBILITY[field]
    assert field_visibility(field, Operation.LIST_READ).included is list_read
    assert field_visibility(field, "item-read").included is item_read
    assert field_visibility(field, Operation.CREATE).included is write
    assert field_visibility(field, Operation.UPDATE).included is write
    assert field_visibility(field, Operation.DELETE).included is False

def test_visibility_unknown_field_and_operation():
    with pytest.raises(PolicyError):
        field_visibility("author", Operation.ITEM_READ)
    with pytest.raises(PolicyError):
        field_visibility("title", "patch")

def test_visibility_of_operation_the_resource_does_not_permit():
    assert not CATEGORY_POLICY.is_allowed(Operation.UPDATE)
    assert CATEGORY_POLICY.field_visibility("name", Operation.UPDATE).included is False
    with pytest.raises(OperationNotAllowedError):
        CATEGORY_POLICY.ensure_allowed(Operation.DELETE)

# --- Constraints ---

def test_field_validation():
    assert field_validation("id") == [Constraint("read_only")]
    assert field_validation("title") == [Constraint("required")]
    assert field_validation("slug") == [Constraint("required"), Constraint("min_length", 5)]
    assert Constraint("not_before", "createdAt") in field_validation("updatedAt")
    assert Constraint("required") not in field_validation("category")
    assert Constraint("nested", "Category") in field_validation("category")

# --- Write validation ---

def test_valid_payload():
    data = POST_POLICY.validate(_payload(), Operation.CREATE)
    assert data["slug"] == "hello-world"
    assert data["createdAt"] == datetime(2024, 1, 1, 10, 0)
    assert data["category"] is None

def test_slug_exactly_five_characters_is_valid():
    data = POST_POLICY.validate(_payload(slug="abcde"), Operation.UPDATE)
    assert data["slug"] == "abcde"

def test_short_slug():
    with pytest.raises(ValidationError) as excinfo:
        POST_POLICY.validate(_payload(slug="ab"), Operation.CREATE)

    error = excinfo.value
    assert not isinstance(error, NestedValidationError)
    assert error.paths == ["slug"]
    assert error.rules_for("slug") == ["min_length"]
    assert error.violations[0].limit == 5

@pytest.mark.parametrize("field", ["title", "slug", "content", "createdAt", "updatedAt"])
def test_missing_required_field(field):
    payload = _payload()
    del payload[field]
    with pytest.raises(ValidationError) as excinfo:
        POST_POLICY.validate(payload, Operation.CREATE)
    assert excinfo.value.rules_for(field) == ["required"]

def test_null_required_field_counts_as_missing():
    with pytest.raises(ValidationError) as excinfo:
        POST_POLICY.validate(_payload(title=None), Operation.CREATE)
    assert excinfo.value.rules_for("title") == ["required"]

@pytest.mark.parametrize("field", ["title", "slug", "content"])
def test_blank_required_string_counts_as_missing(field):
    with pytest.raises(ValidationError) as excinfo:
        POST_POLICY.validate(_payload(**{field: ""}), Operation.CREATE)
    assert excinfo.value.rules_for(field) == ["required"]

def test_blank_nested_name_counts_as_missing():
    with pytest.raises(NestedValidationError) as excinfo:
        POST_POLICY.validate(_payload(category={"name": ""}), Operation.CREATE)
    assert excinfo.value.rules_for("category.name") == ["required"]

def test_all_violations_are_reported_together():
    payload = _payload(slug="ab")
    del payload["content"]
    with pytest.raises(ValidationError) as excinfo:
        POST_POLICY.validate(payload, Operation.CREATE)
    assert set(excinfo.value.paths) == {"slug", "content"}
    assert set(excinfo.value.messages) == {"slug", "content"}

def test_wrong_type():
    with pytest.raises(ValidationError) as excinfo:
        POST_POLICY.validate(_payload(createdAt="yesterday"), Operation.CREATE)
    assert excinfo.value.rules_for("createdAt") == ["invalid"]

def test_client_supplied_id_is_dropped():
    data = POST_POLICY.validate(_payload(id=42), Operation.CREATE)
    assert "id" not in data

def test_client_supplied_id_rejected_when_unknown_fields_are_rejected():
    policy = build_post_policy(reject_unknown_fields=True)
    with pytest.raises(ValidationError) as excinfo:
        policy.validate(_payload(id=42), Operation.CREATE)
    assert excinfo.value.rules_for("id") == ["unknown_field"]

def test_nested_category_is_validated():
    data = POST_POLICY.validate(_payload(category={"name": "Tech"}), Operation.CREATE)
    assert data["category"] == {"name": "Tech"}

    with pytest.raises(NestedValidationError) as excinfo:
        POST_POLICY.validate(_payload(category={"name": "ab"}), Operation.CREATE)
    assert isinstance(excinfo.value, ValidationError)
    assert excinfo.value.paths == ["category.name"]
    assert excinfo.value.rules_for("category.name") == ["min_length"]

def test_nested_category_missing_name():
    with pytest.raises(NestedValidationError) as excinfo:
        POST_POLICY.validate(_payload(category={}), Operation.CREATE)
    assert excinfo.value.rules_for("category.name") == ["required"]

def test_updated_at_not_before_created_at():
    with pytest.raises(ValidationError) as excinfo:
        POST_POLICY.validate(_payload(updatedAt="2023-12-31T10:00:00"), Operation.CREATE)
    assert excinfo.value.rules_for("updatedAt") == ["not_before"]

def test_aware_timestamps_are_normalised_to_utc():
    data = POST_POLICY.validate(
        _payload(createdAt="2024-01-01T12:00:00+02:00", updatedAt="2024-01-01T10:30:00Z"),
        Operation.CREATE,
    )
    assert data["createdAt"] == datetime(2024, 1, 1, 10, 0)
    assert data["updatedAt"] == datetime(2024, 1, 1, 10, 30)
    assert data["createdAt"].tzinfo is None

def test_validate_rejects_read_operations():
    with pytest.raises(PolicyError):
        POST_POLICY.validate(_payload(), Operation.ITEM_READ)
    with pytest.raises(OperationNotAllowedError):
        CATEGORY_POLICY.validate({"name": "Tech"}, Operation.UPDATE)

def test_server_managed_timestamps():
    policy = build_post_policy(server_managed_timestamps=True)
    assert policy.field_visibility("createdAt", Operation.CREATE).included is False
    assert policy.field_visibility("updatedAt", Operation.ITEM_READ).included is True
    assert policy.field_validation("createdAt") == [Constraint("read_only")]

    payload = _payload()
    del payload["createdAt"], payload["updatedAt"]
    data = policy.validate(payload, Operation.CREATE)
    assert "createdAt" not in data and "updatedAt" not in data

# --- Projections ---

def _stored_post(category=None):
    created = datetime(2024, 1, 1)
    return SimpleNamespace(
        id=7,
        title="Hello world",
        slug="hello-world",
        content="A first post.",
        created_at=created,
        updated_at=created + timedelta(hours=1),
        category=category,
    )

def test_list_projection():
    projection = POST_POLICY.project(_stored_post(SimpleNamespace(id=1, name="Tech")), Operation.LIST_READ)
    assert projection == {"id": 7, "title": "Hello world", "slug": "hello-world"}

def test_item_projection_with_category():
    projection = POST_POLICY.project(_stored_post(SimpleNamespace(id=1, name="Tech")), Operation.ITEM_READ)
    assert set(projection) == {"id", "title", "slug", "content", "createdAt", "updatedAt", "category"}
    assert projection["category"] == {"id": 1, "name": "Tech"}
    assert projection["updatedAt"] == datetime(2024, 1, 1, 1, 0, tzinfo=timezone.utc)
    assert projection["createdAt"].utcoffset() == timedelta(0)

def test_item_projection_without_category():
    projection = POST_POLICY.project(_stored_post(), Operation.ITEM_READ)
    assert projection["category"] is None

def test_projection_of_mapping():
    stored = {"id": 3, "title": "t", "slug": "slug-3", "content": "c", "created_at": None}
    assert POST_POLICY.project(stored, Operation.LIST_READ) == {"id": 3, "title": "t", "slug": "slug-3"}
    assert POST_POLICY.project(stored, Operation.DELETE) == {}

def test_derived_models():
    assert set(POST_POLICY.read_model(Operation.LIST_READ).model_fields) == {"id", "title", "slug"}
    assert set(POST_POLICY.write_model(Operation.CREATE).model_fields) == {
        "title", "slug", "content", "createdAt", "updatedAt", "category",
    }
    # Built once per (policy, operation)
    assert POST_POLICY.read_model(Operation.ITEM_READ) is POST_POLICY.read_model("item-read")

@pytest.mark.parametrize("operation", [Operation.CREATE, Operation.UPDATE, Operation.DELETE])
def test_read_model_needs_a_read_operation(operation):
    with pytest.raises(PolicyError):
        POST_POLICY.read_model(operation)

@pytest.mark.parametrize("operation", [Operation.LIST_READ, Operation.ITEM_READ, Operation.DELETE])
def test_write_model_needs_a_write_operation(operation):
    with pytest.raises(PolicyError):
        POST_POLICY.write_model(operation)
