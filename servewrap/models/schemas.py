from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel


class AccessLogRecord(BaseModel):
    """One access log entry, populated by the request wrapper."""

    time: datetime
    seconds: float = 0.0
    remote_addr: str = ""
    proto: str = ""
    tls: bool = False
    host: str = ""
    method: str = ""
    request_uri: str = ""
    user_agent: str = ""
    referer: str = ""
    request_id: str = ""
    code: int = 0
    bytes: int = 0
    err: str = ""

    def __str__(self) -> str:
        return "[v1] " + self.model_dump_json(exclude_defaults=True)


class Item(BaseModel):
    id: str
    name: str
