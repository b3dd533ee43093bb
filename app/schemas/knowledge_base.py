from datetime import datetime

from pydantic import BaseModel, ConfigDict


class SearchHit(BaseModel):
    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)

    id: str
    title: str
    slug: str
    category: str
    excerpt: str = ""


class Article(BaseModel):
    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)

    id: str
    title: str
    slug: str
    category: str
    content: str
    created_at: datetime | None = None
    updated_at: datetime | None = None
