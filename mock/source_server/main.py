from fastapi import FastAPI, Header, HTTPException, Query
from fastapi.responses import JSONResponse
from pathlib import Path
from typing import Optional
import json
import math
import os

app = FastAPI(title="Mock Bookkeeping Source", version="1.0.0")
# Support both local development and Docker
DATA_DIR = Path("/source_stub") if os.path.exists("/source_stub") else Path(__file__).resolve().parents[2] / "source_stub"
ACCESS_TOKEN = os.getenv("MOCK_ACCESS_TOKEN", "")
SECRET_TOKEN = os.getenv("MOCK_SECRET_TOKEN", "")

DATE_KEYS = ("data", "data_vencimento", "date", "dueDate")


def _record_date(record: dict) -> Optional[str]:
    for key in DATE_KEYS:
        if record.get(key):
            value = str(record[key])[:10]
            if "/" in value:
                day, month, year = value.split("/")
                return f"{year}-{month:0>2}-{day:0>2}"
            return value
    return None


@app.get("/health")
def health(): return {"status": "ok"}

@app.get("/records")
def get_records(
    since: Optional[str] = None,
    until: Optional[str] = None,
    page: int = Query(1, ge=1),
    pageSize: int = Query(100, ge=1, le=500),
    access_token: Optional[str] = Header(None, alias="access-token"),
    secret_access_token: Optional[str] = Header(None, alias="secret-access-token"),
):
    if ACCESS_TOKEN and (access_token != ACCESS_TOKEN or secret_access_token != SECRET_TOKEN):
        raise HTTPException(status_code=401, detail="invalid tokens")

    file = DATA_DIR / "records.json"
    if not file.exists():
        raise HTTPException(status_code=404, detail="no records")
    records = json.loads(file.read_text())

    # ISO dates compare lexicographically
    if since:
        records = [r for r in records if (_record_date(r) or since) >= since]
    if until:
        records = [r for r in records if (_record_date(r) or until) <= until]

    total_pages = max(1, math.ceil(len(records) / pageSize))
    start = (page - 1) * pageSize
    return JSONResponse(content={
        "data": records[start:start + pageSize],
        "meta": {"nextPage": page + 1 if page < total_pages else None, "totalPages": total_pages},
    })
