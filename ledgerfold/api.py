"""
Ledgerfold HTTP API

Read-only retrieval of per-item history and stateless verification of
aggregate proofs. Nothing here mutates the epoch.

    GET  /health                 epoch summary
    GET  /history/{item_id}      ordered provenance entries and current state
    GET  /inclusion/{position}   inclusion proof against the current root
    GET  /aggregates             every aggregate proof produced so far
    GET  /keys                   public verification keys (JWKS)
    POST /verify                 {"proof", "public_inputs", "keys"?} -> {"valid"}

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import time
from typing import Any, Callable, Dict, List, Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from ledgerfold import __version__
from ledgerfold.engine import Epoch
from ledgerfold.errors import UnknownItem
from ledgerfold.observability import (
    Layer,
    generate_correlation_id,
    get_logger,
    reset_correlation_id,
    set_correlation_id,
)
from ledgerfold.proofs import AggregateProof, KeyRegistry, PublicInputs, verify_aggregate
from ledgerfold.schema import validate_document

_log = get_logger("http", Layer.API)

CORRELATION_HEADER = "X-Correlation-ID"


# =============================================================================
# MODELS
# =============================================================================

class HealthResponse(BaseModel):
    status: str
    version: str
    epoch_id: str
    size: int
    capacity: int
    root: str
    sealed: bool
    buffered: int
    aggregates: int
    states: Dict[str, int]


class ProvenanceEntryModel(BaseModel):
    item_id: str
    sequence_no: int
    event_kind: str
    timestamp: str
    prev_entry_hash: str
    payload: Dict[str, Any]
    entry_hash: str


class HistoryResponse(BaseModel):
    """History of one item with its current lifecycle state."""

    item_id: str
    state: str
    owner: str
    position: int
    chain_valid: bool
    entries: List[ProvenanceEntryModel]


class VerifyRequest(BaseModel):
    proof: Dict[str, Any]
    public_inputs: Dict[str, Any]
    keys: Optional[Dict[str, Any]] = Field(
        default=None,
        description="JWKS to verify against; defaults to the epoch's registered keys",
    )


class VerifyResponse(BaseModel):
    valid: bool
    errors: List[str] = Field(default_factory=list)


# =============================================================================
# MIDDLEWARE
# =============================================================================

class CorrelationMiddleware(BaseHTTPMiddleware):
    """Propagate X-Correlation-ID and log each request with its duration."""

    async def dispatch(self, request: Request, call_next: Callable[[Request], Any]) -> Response:
        correlation_id = request.headers.get(CORRELATION_HEADER) or generate_correlation_id()
        token = set_correlation_id(correlation_id)
        start = time.perf_counter()
        try:
            response = await call_next(request)
            _log.info(
                "Request completed",
                operation="request",
                duration_ms=round((time.perf_counter() - start) * 1000, 3),
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
            )
            response.headers[CORRELATION_HEADER] = correlation_id
            return response
        finally:
            reset_correlation_id(token)


# =============================================================================
# APPLICATION
# =============================================================================

def verify_document(
    proof: Dict[str, Any],
    public_inputs: Dict[str, Any],
    registry: KeyRegistry,
) -> VerifyResponse:
    """Schema-check both documents, then verify the proof. Never raises on bad input."""
    errors = validate_document(proof, "aggregate-proof")
    errors += validate_document(public_inputs, "public-inputs")
    if errors:
        return VerifyResponse(valid=False, errors=errors)
    valid = verify_aggregate(
        AggregateProof.from_dict(proof),
        PublicInputs.from_dict(public_inputs),
        registry,
    )
    return VerifyResponse(valid=valid, errors=[] if valid else ["proof does not verify"])


def create_app(epoch: Epoch) -> FastAPI:
    app = FastAPI(
        title="Ledgerfold API",
        description="Provenance retrieval and aggregate proof verification",
        version=__version__,
    )
    app.add_middleware(CorrelationMiddleware)

    @app.get("/health", response_model=HealthResponse)
    def health() -> HealthResponse:
        return HealthResponse(status="healthy", version=__version__, **epoch.stats())

    @app.get("/history/{item_id}", response_model=HistoryResponse)
    def history(item_id: str) -> HistoryResponse:
        try:
            entries, record = epoch.history(item_id)
        except UnknownItem:
            raise HTTPException(status_code=404, detail=f"Unknown item: {item_id}")
        return HistoryResponse(
            item_id=item_id,
            state=record.state.value,
            owner=record.owner,
            position=record.position,
            chain_valid=entries.verify(),
            entries=[ProvenanceEntryModel(**e.to_dict()) for e in entries],
        )

    @app.get("/inclusion/{position}")
    def inclusion(position: int) -> Dict[str, Any]:
        try:
            proof = epoch.inclusion(position)
        except IndexError:
            raise HTTPException(status_code=404, detail=f"No leaf at position {position}")
        return proof.to_dict()

    @app.get("/aggregates")
    def aggregates() -> Dict[str, Any]:
        return {"aggregates": [a.to_dict() for a in epoch.aggregator.aggregates()]}

    @app.get("/keys")
    def keys() -> Dict[str, Any]:
        return epoch.registry.to_jwks()

    @app.post("/verify", response_model=VerifyResponse)
    def verify(request: VerifyRequest) -> VerifyResponse:
        if request.keys is not None:
            try:
                registry = KeyRegistry.from_jwks(request.keys)
            except (KeyError, ValueError) as e:
                return VerifyResponse(valid=False, errors=[f"keys: {e}"])
        else:
            registry = epoch.registry
        return verify_document(request.proof, request.public_inputs, registry)

    return app
