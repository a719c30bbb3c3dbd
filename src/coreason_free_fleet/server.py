# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_free_fleet


from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List

from fastapi import FastAPI, HTTPException, Request
from pydantic import BaseModel, ConfigDict

from coreason_free_fleet.engine import FleetEngine
from coreason_free_fleet.models import CostTier, ModelMetadata
from coreason_free_fleet.racer import AttemptsExhaustedError, RaceError
from coreason_free_fleet.scout import NoActiveProvidersError
from coreason_free_fleet.utils.logger import logger


class ChatCompletionRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    messages: List[Dict[str, Any]]


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    async with FleetEngine() as engine:
        app.state.engine = engine
        yield


app = FastAPI(title="Coreason Free Fleet", lifespan=lifespan)


def _engine(request: Request) -> FleetEngine:
    return request.app.state.engine  # type: ignore[no-any-return]


@app.get("/api/v1/health")
async def health(request: Request) -> Dict[str, Any]:
    report = await _engine(request).health.check()
    return report.model_dump(mode="json")


@app.get("/api/v1/models/{model_id:path}")
async def model_metadata(model_id: str, request: Request) -> ModelMetadata:
    metadata = await _engine(request).oracle.fetch_model_metadata(model_id)
    if metadata.tier == CostTier.UNKNOWN:
        raise HTTPException(status_code=404, detail=f"No metadata found for model: {model_id}")
    return metadata


@app.get("/api/v1/discover")
async def discover(request: Request) -> Dict[str, List[str]]:
    try:
        return await _engine(request).discover()
    except NoActiveProvidersError as e:
        logger.error(f"Discovery failed: {e}")
        raise HTTPException(status_code=503, detail=str(e)) from e


@app.post("/v1/chat/completions")
async def chat_completions(payload: ChatCompletionRequest, request: Request) -> Dict[str, Any]:
    """
    Delegates a chat completion to the fleet; the winning model's response is
    returned with the delegation details under `fleet`.
    """
    extra = dict(payload.model_extra or {})
    extra.pop("model", None)
    try:
        outcome = await _engine(request).delegator.chat(payload.messages, **extra)
    except (AttemptsExhaustedError, RaceError, NoActiveProvidersError) as e:
        raise HTTPException(status_code=503, detail=str(e)) from e
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e

    result = outcome.result
    body: Dict[str, Any] = result.model_dump() if hasattr(result, "model_dump") else {"result": result}
    body["fleet"] = outcome.model_dump(mode="json", exclude={"result"})
    return body
