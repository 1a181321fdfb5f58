"""
Pydantic models for request/response validation.
"""
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class FlagRoles(BaseModel):
    flag: list[str] = []
    unflag: list[str] = []


class FlagCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    entity_type: str = Field(..., min_length=1, max_length=128)
    name: str = Field(..., min_length=1)
    title: str = Field(..., min_length=1, max_length=255)
    is_global: bool = Field(default=False, alias="global")
    types: list[str] = []
    roles: FlagRoles = FlagRoles()
    options: dict = {}


class FlagUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: Optional[str] = None
    title: Optional[str] = Field(default=None, min_length=1, max_length=255)
    is_global: Optional[bool] = Field(default=None, alias="global")
    types: Optional[list[str]] = None
    roles: Optional[FlagRoles] = None
    options: Optional[dict] = None


class FlagImport(BaseModel):
    api_version: int
    flags: list[dict]
    overwrite: bool = False


class FlagAction(BaseModel):
    action: str = Field(..., pattern=r"^[a-z]+$")
    skip_permission_check: bool = False


class ResetRequest(BaseModel):
    entity_id: Optional[int] = None


class AccessRequest(BaseModel):
    # entity id -> "flag" | "unflag"
    entity_ids: dict[int, str]


class FlagStatus(BaseModel):
    flag: str
    entity_type: str
    entity_id: int
    flagged: bool
    count: int
    access: dict[str, bool]
    title: Optional[str] = None
