from fastapi import APIRouter, Depends, HTTPException

from ..deps import get_ledger
from ..ledger import LedgerStore

router = APIRouter(prefix="/health", tags=["health"])


@router.get("")
def health():
    return {"ok": True}


@router.get("/db")
def health_db(ledger: LedgerStore = Depends(get_ledger)):
    try:
        ledger.ping()
    except Exception as e:
        # surface the error so we know exactly what's wrong
        raise HTTPException(status_code=503, detail=f"DB check failed: {e}")
    return {"ok": True, "db": "up"}
