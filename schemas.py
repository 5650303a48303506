# schemas.py

from typing import List

from pydantic import BaseModel

from policy import CATEGORY_POLICY, POST_POLICY, Operation

# --- Projections derived from the policy tables ---

PostCollection = POST_POLICY.read_model(Operation.LIST_READ)
PostItem = POST_POLICY.read_model(Operation.ITEM_READ)
CategoryCollection = CATEGORY_POLICY.read_model(Operation.LIST_READ)
CategoryItem = CATEGORY_POLICY.read_model(Operation.ITEM_READ)

# --- Envelopes ---

class PaginatedPostsResponse(BaseModel):
    total_count: int
    posts: List[PostCollection]

class PaginatedCategoriesResponse(BaseModel):
    total_count: int
    categories: List[CategoryCollection]

class ViolationOut(BaseModel):
    propertyPath: str
    rule: str
    message: str

class ValidationErrorResponse(BaseModel):
    detail: str
    violations: List[ViolationOut]
