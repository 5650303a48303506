# models.py

import sqlalchemy as sa
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()

class Category(Base):
    __tablename__ = "categories"

    id = sa.Column(sa.Integer, primary_key=True, index=True)
    name = sa.Column(sa.String(255), nullable=False)

    def __repr__(self):
        return f"<Category(id={self.id}, name='{self.name}')>"


class Post(Base):
    __tablename__ = "posts"

    id = sa.Column(sa.Integer, primary_key=True, index=True)
    title = sa.Column(sa.String(255), nullable=False)
    slug = sa.Column(sa.String(255), nullable=False, index=True) # not unique, see DESIGN.md
    content = sa.Column(sa.Text, nullable=False)
    created_at = sa.Column(sa.DateTime, nullable=False)
    updated_at = sa.Column(sa.DateTime, nullable=False)
    category_id = sa.Column(
        sa.Integer, sa.ForeignKey("categories.id", ondelete="SET NULL"), nullable=True, index=True
    )

    # selectin so the category is loaded eagerly; async sessions cannot lazy-load on attribute access
    category = relationship(Category, lazy="selectin")

    def __repr__(self):
        return f"<Post(id={self.id}, slug='{self.slug}')>"
