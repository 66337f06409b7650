from pydantic import BaseModel
from typing import Optional, List, Dict, Any
from datetime import datetime


class TokenErrorResponse(BaseModel):
    code: str
    message: str
    recommended_action: str


class ConnectionStatusResponse(BaseModel):
    user_id: str
    connected: bool
    has_credentials: bool
    can_sync: bool
    connection_status: Optional[str] = None
    ebay_user_id: Optional[str] = None
    connected_at: Optional[datetime] = None
    issues: List[TokenErrorResponse] = []


class DisconnectResponse(BaseModel):
    user_id: str
    disconnected: bool
    connection_status: str


class ReductionPassRequest(BaseModel):
    dry_run: bool = False
    user_id: Optional[str] = None


class ReductionPassResponse(BaseModel):
    started_at: datetime
    finished_at: datetime
    dry_run: bool
    users_processed: int
    users_skipped: int
    listings_evaluated: int
    listings_reduced: int
    listings_failed: int
    logs_pruned: int
    errors: List[Dict[str, Any]] = []
    details: List[Dict[str, Any]] = []
