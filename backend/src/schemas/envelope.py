from pydantic import BaseModel


class ErrorInfo(BaseModel):
    code: str
    message: str
    retryable: bool = False
    suggested_fix: str | None = None  # Human-readable fix suggestion
