"""Pydantic v2 schemas for the sweep trigger endpoint."""

from pydantic import BaseModel


class SweepResponse(BaseModel):
    ok: bool = True
    sweep: str
    result: dict[str, int]
