"""Base model configuration for declarative catalog data."""

from pydantic import BaseModel, ConfigDict


class Model(BaseModel):
    """Immutable model shared by catalog records; unknown keys are ignored."""

    model_config = ConfigDict(frozen=True, extra="ignore")
