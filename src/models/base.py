"""Shared Pydantic base model for WHOOP wire schemas."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict


class WhoopBase(BaseModel):
    """Base model with shared config for all WHOOP request/response schemas.

    Unknown fields are ignored: WHOOP adds fields to its payloads without
    versioning them.
    """

    model_config = ConfigDict(
        populate_by_name=True,
        str_strip_whitespace=True,
        extra="ignore",
    )
