"""
Request bodies for recipe and comment mutations.

The rules mirror what the web forms enforce client-side, so the API rejects
the same inputs with the same messages.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


MAX_COMMENT_LENGTH = 2000
DEFAULT_CATEGORY = "General"


def _non_blank(items: List[str]) -> List[str]:
    return [item.strip() for item in items if item and item.strip()]


class RecipeInput(BaseModel):
    """Recipe fields submitted on create and update."""

    model_config = ConfigDict(populate_by_name=True, validate_default=True)

    title: str = ""
    description: str = ""
    cook_time: Optional[int] = Field(default=None, alias="cookTime")
    difficulty: Optional[str] = None
    category: Optional[str] = None
    ingredients: List[str] = Field(default_factory=list)
    instructions: List[str] = Field(default_factory=list)

    @field_validator("title")
    @classmethod
    def _title(cls, value: str) -> str:
        value = value.strip()
        if len(value) < 3:
            raise ValueError("Title must be at least 3 characters long")
        return value

    @field_validator("description")
    @classmethod
    def _description(cls, value: str) -> str:
        value = value.strip()
        if len(value) < 10:
            raise ValueError("Description must be at least 10 characters long")
        return value

    @field_validator("cook_time", mode="after")
    @classmethod
    def _cook_time(cls, value: Optional[int]) -> int:
        if value is None or value < 1:
            raise ValueError("Cook time must be a positive number")
        return value

    @field_validator("ingredients")
    @classmethod
    def _ingredients(cls, value: List[str]) -> List[str]:
        value = _non_blank(value)
        if not value:
            raise ValueError("At least one ingredient is required")
        return value

    @field_validator("instructions")
    @classmethod
    def _instructions(cls, value: List[str]) -> List[str]:
        value = _non_blank(value)
        if not value:
            raise ValueError("At least one instruction is required")
        return value


class CommentInput(BaseModel):
    """A new comment, optionally replying to another one."""

    model_config = ConfigDict(populate_by_name=True)

    content: str
    parent_id: Optional[str] = Field(default=None, alias="parentId")

    @field_validator("content")
    @classmethod
    def _content(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Comment cannot be empty")
        if len(value) > MAX_COMMENT_LENGTH:
            raise ValueError(
                f"Comment must be {MAX_COMMENT_LENGTH} characters or less"
            )
        return value.strip()


def recipe_row(recipe: RecipeInput, user_id: str) -> Dict[str, Any]:
    """Shape a validated recipe as a ``recipes`` table row."""
    return {
        "title": recipe.title,
        "description": recipe.description,
        "cooking_time": recipe.cook_time,
        "difficulty": recipe.difficulty or "",
        "category": recipe.category or DEFAULT_CATEGORY,
        "user_id": user_id,
        "ingredients": list(recipe.ingredients),
        "instructions": list(recipe.instructions),
    }


def comment_row(recipe_id: str, comment: CommentInput, user_id: str) -> Dict[str, Any]:
    return {
        "recipe_id": recipe_id,
        "user_id": user_id,
        "content": comment.content,
        "parent_id": comment.parent_id,
    }


def like_row(recipe_id: str, user_id: str) -> Dict[str, str]:
    return {"recipe_id": recipe_id, "user_id": user_id}
