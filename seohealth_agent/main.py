from __future__ import annotations

import logging

from fastapi import FastAPI
from fastapi import HTTPException
from fastapi.middleware.cors import CORSMiddleware

from .config import Settings, cors_allow_origins, load_env, log_level
from .errors import FetchError, InvalidDomainError, ParkedOrExpiredError, UnreachableError
from .models import AnalyzeRequest, Report
from .orchestrator import AnalyzeOptions, Analyzer


# Load environment variables from the repo root .env (API keys, timeouts) before reading settings.
load_env()
logging.basicConfig(level=log_level(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")

app = FastAPI(title="SEO Health Agent", version="0.1.0")

# For local dev, this defaults to allowing http://localhost:3000.
# In production, set SEOHEALTH_CORS_ORIGINS to your deployed frontend origins.
app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_allow_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

analyzer = Analyzer(Settings.from_env())


@app.get("/healthz")
def healthz():
    return {"ok": True}


@app.get("/checks")
def list_checks():
    return {"checks": analyzer.registry.ids()}


@app.post("/analyze", response_model=Report)
def analyze_endpoint(req: AnalyzeRequest):
    options = AnalyzeOptions(force_refresh=req.force_refresh, skip_protocol_checks=req.skip_protocol_checks)
    try:
        return analyzer.analyze(req.domain, options)
    except InvalidDomainError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except ParkedOrExpiredError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except (UnreachableError, FetchError) as e:
        raise HTTPException(status_code=502, detail=str(e))
