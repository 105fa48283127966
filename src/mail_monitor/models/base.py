"""Base Pydantic model configuration."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict


class AppModel(BaseModel):
    """Base model for rows read back from sqlite."""

    model_config = ConfigDict(
        extra="forbid",
        str_strip_whitespace=True,
        validate_default=True,
        validate_assignment=True,
    )


class Observation(BaseModel):
    """Immutable snapshot of something observed on the remote store.

    Observations are compared field by field against stored rows, so they are
    frozen and hashable; unknown keys sent by a store adapter are ignored.
    """

    model_config = ConfigDict(
        extra="ignore",
        frozen=True,
        str_strip_whitespace=True,
    )
