"""FastAPI application exposing a :class:`~stoch.inference.stoch.Stoch` model."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field, model_validator

from stoch.inference.randomness import SeededRandomSource
from stoch.inference.stoch import Stoch
from stoch.inference.stoch_common import (
    CounterOverflowError,
    InvalidArgumentError,
    RandomnessUnavailableError,
)

logger = logging.getLogger(__name__)

MAX_GENERATE_SIZE = 1 << 20


class TrainRequest(BaseModel):
    text: Optional[str] = None
    data_hex: Optional[str] = None

    @model_validator(mode="after")
    def _exactly_one_payload(self) -> "TrainRequest":
        if (self.text is None) == (self.data_hex is None):
            raise ValueError("Provide exactly one of 'text' or 'data_hex'")
        return self

    def payload(self) -> bytes:
        if self.text is not None:
            return self.text.encode("utf-8")
        try:
            return bytes.fromhex(self.data_hex or "")
        except ValueError as exc:
            raise InvalidArgumentError(f"Invalid hex payload: {exc}") from exc


class TrainResponse(BaseModel):
    consumed: int
    grand_total: int


class GenerateRequest(BaseModel):
    size: int = Field(ge=1, le=MAX_GENERATE_SIZE)
    seed: Optional[int] = Field(default=None, ge=0)


class GenerateResponse(BaseModel):
    data_hex: str
    text: str
    logical_length: int


def create_api_server(model: Stoch) -> FastAPI:
    app = FastAPI(title="stoch", description="Byte-level Markov generator")

    @app.post("/v1/train", response_model=TrainResponse)
    def train(request: TrainRequest) -> TrainResponse:
        try:
            consumed = model.train(request.payload())
        except InvalidArgumentError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except CounterOverflowError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        return TrainResponse(consumed=consumed, grand_total=model.grand_total)

    @app.post("/v1/generate", response_model=GenerateResponse)
    def generate(request: GenerateRequest) -> GenerateResponse:
        source = SeededRandomSource(request.seed) if request.seed is not None else None
        try:
            result = model.generate(request.size, random_source=source)
        except InvalidArgumentError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except RandomnessUnavailableError as exc:
            logger.error("Generation failed: %s", exc)
            raise HTTPException(status_code=503, detail=str(exc)) from exc
        return GenerateResponse(
            data_hex=result.data.hex(),
            text=result.text(),
            logical_length=result.logical_length,
        )

    @app.post("/v1/reset")
    def reset() -> dict:
        model.reset()
        return {"status": "ok"}

    @app.get("/v1/stats")
    def stats() -> dict:
        record = model.diagnostics_record()
        record["top_transitions"] = [list(item) for item in model.top_transitions(10)]
        return record

    return app
