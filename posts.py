# posts.py

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Tuple

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from errors import NotFoundError
from models import Base, Category, Post
from policy import Operation, ResourcePolicy

logger = logging.getLogger(__name__)

# Storage class behind each resource policy, by policy name
MODELS = {"Post": Post, "Category": Category}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)

# --- Shared helpers ---

async def _paginate(session: AsyncSession, model, limit: int, offset: int) -> Tuple[int, List[Any]]:
    base_stmt = select(model)

    # Count the matching rows *before* pagination
    count_stmt = select(func.count()).select_from(base_stmt.subquery())
    total_count_result = await session.execute(count_stmt)
    total_count = total_count_result.scalar_one_or_none() or 0

    paginated_stmt = base_stmt.order_by(model.id).offset(offset).limit(limit)
    result = await session.execute(paginated_stmt)
    return total_count, list(result.scalars().all())


async def _get(session: AsyncSession, model, entity_id: int):
    entity = await session.get(model, entity_id)
    if entity is None:
        raise NotFoundError(model.__name__, entity_id)
    return entity


async def _assign(session: AsyncSession, entity: Base, policy: ResourcePolicy, data: Dict[str, Any], operation: Operation) -> None:
    """
    Copy validated data onto an entity. Nested payloads are inserted and
    flushed first, so the parent is written with a reference that already exists.
    """
    fields = sorted(policy.included_fields(operation), key=lambda f: f.nested is None)
    for field_policy in fields:
        value = data.get(field_policy.name)
        if field_policy.nested is not None and value is not None:
            child = MODELS[field_policy.nested.name]()
            await _assign(session, child, field_policy.nested, value, Operation.CREATE)
            session.add(child)
            await session.flush()
            logger.debug(f"Cascaded {child!r} for {policy.name}")
            value = child
        setattr(entity, field_policy.attr, value)


def _stamp(post: Post, policy: ResourcePolicy, operation: Operation) -> None:
    # Timestamps outside the write projection belong to the server
    now = _utcnow()
    if not policy.field_visibility("createdAt", operation).included and post.created_at is None:
        post.created_at = now
    if not policy.field_visibility("updatedAt", operation).included:
        post.updated_at = now


async def _commit_write(session: AsyncSession, entity: Base, policy: ResourcePolicy, data: Dict[str, Any], operation: Operation) -> None:
    try:
        await _assign(session, entity, policy, data, operation)
        if isinstance(entity, Post):
            _stamp(entity, policy, operation)
        session.add(entity)
        await session.commit()
    except SQLAlchemyError:
        await session.rollback()
        raise

# --- Posts ---

async def list_posts(session: AsyncSession, policy: ResourcePolicy, limit: int = 30, offset: int = 0) -> Tuple[int, List[Post]]:
    policy.ensure_allowed(Operation.LIST_READ)
    return await _paginate(session, Post, limit, offset)


async def get_post(session: AsyncSession, policy: ResourcePolicy, post_id: int) -> Post:
    policy.ensure_allowed(Operation.ITEM_READ)
    return await _get(session, Post, post_id)


async def create_post(session: AsyncSession, policy: ResourcePolicy, payload: Any) -> Post:
    # Validate everything, nested category included, before touching the database
    data = policy.validate(payload, Operation.CREATE)

    post = Post()
    await _commit_write(session, post, policy, data, Operation.CREATE)
    logger.info(f"Created post {post.id} '{post.slug}'")
    return post


async def replace_post(session: AsyncSession, policy: ResourcePolicy, post_id: int, payload: Any) -> Post:
    """Full replacement: optional fields left out of the payload are cleared."""
    policy.ensure_allowed(Operation.UPDATE)
    post = await _get(session, Post, post_id)
    data = policy.validate(payload, Operation.UPDATE)

    await _commit_write(session, post, policy, data, Operation.UPDATE)
    logger.info(f"Replaced post {post.id} '{post.slug}'")
    return post


async def delete_post(session: AsyncSession, policy: ResourcePolicy, post_id: int) -> None:
    policy.ensure_allowed(Operation.DELETE)
    post = await _get(session, Post, post_id)
    try:
        await session.delete(post)
        await session.commit()
    except SQLAlchemyError:
        await session.rollback()
        raise
    logger.info(f"Deleted post {post_id}")

# --- Categories ---

async def list_categories(session: AsyncSession, policy: ResourcePolicy, limit: int = 30, offset: int = 0) -> Tuple[int, List[Category]]:
    policy.ensure_allowed(Operation.LIST_READ)
    return await _paginate(session, Category, limit, offset)


async def get_category(session: AsyncSession, policy: ResourcePolicy, category_id: int) -> Category:
    policy.ensure_allowed(Operation.ITEM_READ)
    return await _get(session, Category, category_id)


async def create_category(session: AsyncSession, policy: ResourcePolicy, payload: Any) -> Category:
    data = policy.validate(payload, Operation.CREATE)

    category = Category()
    await _commit_write(session, category, policy, data, Operation.CREATE)
    logger.info(f"Created category {category.id} '{category.name}'")
    return category
