from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional


class AssociateRequest(BaseModel):
    content_handle: str
    record_id: int = Field(gt=0)


class OverwriteRequest(BaseModel):
    key: str


class ReconcileRequest(BaseModel):
    max_age_seconds: Optional[int] = Field(default=None, ge=0)
    dry_run: bool = False


class UploadResponse(BaseModel):
    success: bool = True
    content_handle: str
    size: int


class AssociateResponse(BaseModel):
    success: bool = True
    handle: str


class KeyResponse(BaseModel):
    success: bool = True
    key: str


class ReconcileResponse(BaseModel):
    scanned: int
    associated: List[Dict[str, Any]] = Field(default_factory=list)
    purged: List[str] = Field(default_factory=list)
    kept: List[Dict[str, str]] = Field(default_factory=list)
