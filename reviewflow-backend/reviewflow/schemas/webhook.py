from pydantic import BaseModel


class ReconcileSummaryOut(BaseModel):
    received: int
    applied: int
    ignored: int
    unmatched: int
    dropped: int
    failed: int = 0
