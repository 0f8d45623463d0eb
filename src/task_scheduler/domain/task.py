from typing import FrozenSet, Optional

from pydantic import BaseModel, ConfigDict, Field


class TaskDefinition(BaseModel):
    """
    Registered unit of work. Resolved once at registration, never mutated.
    """
    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1, description="Unique task name")
    description: str = Field(..., description="Human-readable description")
    tags: FrozenSet[str] = Field(default_factory=frozenset, description="Tags used for filtering only")
    request_schema_name: Optional[str] = Field(None, description="Name of the pydantic model requests are validated against")
