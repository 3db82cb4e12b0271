import logging
from typing import Optional

from fastapi import FastAPI, UploadFile, File, Form, HTTPException
from pydantic import ValidationError

from .errors import CompositeKeyError, FunctionalDependencyError, SchemaMismatchError
from .models import NormalizeResponse, HealthResponse, NormalizationPlan
from .normalize import decompose_csv_bytes

logger = logging.getLogger(__name__)

app = FastAPI(
    title="relnorm",
    description="Normal-form decomposition of wide CSV tables",
    version="0.1.0",
)

@app.get("/health", response_model=HealthResponse)
def health():
    return {"ok": True}

@app.post("/normalize", response_model=NormalizeResponse)
async def normalize_csv(file: UploadFile = File(...), plan: Optional[str] = Form(None)):
    if not (file.filename or "").lower().endswith(".csv"):
        raise HTTPException(status_code=422, detail="Only CSV files are supported")

    try:
        parsed_plan = NormalizationPlan.model_validate_json(plan) if plan else NormalizationPlan()
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=f"Invalid plan: {exc}") from exc

    raw = await file.read()
    try:
        return decompose_csv_bytes(raw, parsed_plan)
    except (SchemaMismatchError, FunctionalDependencyError, CompositeKeyError) as exc:
        logger.warning(f"Rejected {file.filename}: {exc}")
        raise HTTPException(status_code=422, detail=str(exc)) from exc
