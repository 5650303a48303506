# main.py

import logging
from typing import Any, Dict, Optional

from fastapi import Body, Depends, FastAPI, Query, Request, Response
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession
from contextlib import asynccontextmanager

import posts
from config import get_settings
from database import get_db, create_tables
from errors import NotFoundError, OperationNotAllowedError, ValidationError
from policy import Operation, ResourcePolicy, get_category_policy, get_post_policy
from schemas import (
    CategoryItem,
    PaginatedCategoriesResponse,
    PaginatedPostsResponse,
    PostItem,
    ValidationErrorResponse,
)

logger = logging.getLogger(__name__)

# --- Lifespan Management (for logging and DB setup) ---

@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logger.info("Application startup: Creating database tables...")
    await create_tables()
    yield
    logger.info("Application shutdown.")

# --- FastAPI App ---

app = FastAPI(lifespan=lifespan, title="Posts API", version="1.0.0")

# --- Error mapping ---

@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    body = ValidationErrorResponse(
        detail="; ".join(f"{v.path}: {v.message}" for v in exc.violations),
        violations=[
            {"propertyPath": v.path, "rule": v.rule, "message": v.message} for v in exc.violations
        ],
    )
    return JSONResponse(status_code=422, content=body.model_dump())

@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})

@app.exception_handler(OperationNotAllowedError)
async def not_allowed_handler(request: Request, exc: OperationNotAllowedError):
    return JSONResponse(status_code=405, content={"detail": str(exc)})

# --- Helpers ---

def _page_limit(limit: Optional[int]) -> int:
    return limit if limit is not None else get_settings().page_size

# --- Post Endpoints ---

@app.get("/posts/", response_model=PaginatedPostsResponse)
async def read_posts(
    offset: int = Query(0, ge=0, description="Pagination offset"),
    limit: Optional[int] = Query(None, ge=1, le=100, description="Pagination limit"),
    session: AsyncSession = Depends(get_db),
    policy: ResourcePolicy = Depends(get_post_policy),
):
    """
    Retrieve posts, stripped to the collection projection, with pagination.
    """
    total_count, stored = await posts.list_posts(session, policy, limit=_page_limit(limit), offset=offset)
    return {
        "total_count": total_count,
        "posts": [policy.project(post, Operation.LIST_READ) for post in stored],
    }

@app.get("/posts/{post_id}", response_model=PostItem)
async def read_post(
    post_id: int,
    session: AsyncSession = Depends(get_db),
    policy: ResourcePolicy = Depends(get_post_policy),
):
    post = await posts.get_post(session, policy, post_id)
    return policy.project(post, Operation.ITEM_READ)

@app.post("/posts/", response_model=PostItem, status_code=201)
async def create_post(
    payload: Dict[str, Any] = Body(...),
    session: AsyncSession = Depends(get_db),
    policy: ResourcePolicy = Depends(get_post_policy),
):
    post = await posts.create_post(session, policy, payload)
    return policy.project(post, Operation.ITEM_READ)

@app.put("/posts/{post_id}", response_model=PostItem)
async def replace_post(
    post_id: int,
    payload: Dict[str, Any] = Body(...),
    session: AsyncSession = Depends(get_db),
    policy: ResourcePolicy = Depends(get_post_policy),
):
    post = await posts.replace_post(session, policy, post_id, payload)
    return policy.project(post, Operation.ITEM_READ)

@app.delete("/posts/{post_id}", status_code=204)
async def delete_post(
    post_id: int,
    session: AsyncSession = Depends(get_db),
    policy: ResourcePolicy = Depends(get_post_policy),
):
    await posts.delete_post(session, policy, post_id)
    return Response(status_code=204)

# --- Category Endpoints ---

@app.get("/categories/", response_model=PaginatedCategoriesResponse)
async def read_categories(
    offset: int = Query(0, ge=0, description="Pagination offset"),
    limit: Optional[int] = Query(None, ge=1, le=100, description="Pagination limit"),
    session: AsyncSession = Depends(get_db),
    policy: ResourcePolicy = Depends(get_category_policy),
):
    total_count, stored = await posts.list_categories(session, policy, limit=_page_limit(limit), offset=offset)
    return {
        "total_count": total_count,
        "categories": [policy.project(category, Operation.LIST_READ) for category in stored],
    }

@app.get("/categories/{category_id}", response_model=CategoryItem)
async def read_category(
    category_id: int,
    session: AsyncSession = Depends(get_db),
    policy: ResourcePolicy = Depends(get_category_policy),
):
    category = await posts.get_category(session, policy, category_id)
    return policy.project(category, Operation.ITEM_READ)

@app.post("/categories/", response_model=CategoryItem, status_code=201)
async def create_category(
    payload: Dict[str, Any] = Body(...),
    session: AsyncSession = Depends(get_db),
    policy: ResourcePolicy = Depends(get_category_policy),
):
    category = await posts.create_category(session, policy, payload)
    return policy.project(category, Operation.ITEM_READ)

# --- Root Endpoint ---

@app.get("/")
async def root():
    return {"message": "Welcome to the Posts API. Go to /docs for documentation."}

# --- Run with Uvicorn (for local testing) ---
# Use: uvicorn main:app --reload
