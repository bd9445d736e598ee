"""Blog post publishing schemas."""
from pydantic import BaseModel, Field, TypeAdapter


class RepurposedAsset(BaseModel):
    """A social post cut from a blog post."""
    platform: str = Field(..., min_length=1)
    content: str = Field(..., min_length=1)
    image_url: str | None = None


repurposed_assets_adapter = TypeAdapter(list[RepurposedAsset])
