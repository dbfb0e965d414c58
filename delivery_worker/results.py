"""Tagged outcomes of a worker request.

Each model is exactly one JSON body the HTTP layer can return; the status
code travels beside the body as a class attribute and is never serialised.
"""

from typing import ClassVar, Literal, Optional

from pydantic import BaseModel, Field


class DeliveryErrorEntry(BaseModel):
    id: str
    error: str


class RunReport(BaseModel):
    status_code: ClassVar[int] = 200
    ok: bool = True
    now: str
    picked: int = 0
    sent: int = 0
    failed: int = 0
    skipped: int = 0
    errors: list[DeliveryErrorEntry] = Field(default_factory=list)


class AuthErrorResult(BaseModel):
    status_code: ClassVar[int] = 401
    ok: Literal[False] = False
    error: str = "Unauthorized"


class ConfigErrorResult(BaseModel):
    status_code: ClassVar[int] = 500
    ok: Literal[False] = False
    error: str = "Missing env"
    missing: list[str]


class FetchErrorResult(BaseModel):
    status_code: ClassVar[int] = 500
    ok: Literal[False] = False
    step: str = "fetch-pending"
    error: str


class FatalErrorResult(BaseModel):
    status_code: ClassVar[int] = 500
    ok: Literal[False] = False
    fatal: str


class MethodNotAllowedResult(BaseModel):
    status_code: ClassVar[int] = 405
    ok: Literal[False] = False
    error: str


class DiagResult(BaseModel):
    ok: bool
    env: dict[str, bool]
    db: Optional[str] = None
    error: Optional[str] = None
    note: Optional[str] = None
    fatal: Optional[str] = None

    @property
    def status_code(self) -> int:
        return 200 if self.ok else 500


class PingResult(BaseModel):
    status_code: ClassVar[int] = 200
    ok: bool = True
    now: str


WorkerResult = RunReport | FetchErrorResult | FatalErrorResult
