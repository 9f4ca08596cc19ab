from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from typing import Optional
import json
import logging

from ...protocol.types.common import (
    AuthorizationError, FatalLedgerError, InsufficientBalance, InvalidSignature, NoSuchUnit,
    OperationType, Paused, ProtocolError, ReentrantCall, ValidationError,
)
from ...protocol.crypto.addresses import address_from_pubkey
from ...protocol.types.staking import BatchRequest, ClaimRequest, SignedRequest
from ..core.engine import StakingEngine
from ..core.receipts import OperationReceipt

logger = logging.getLogger(__name__)

app = FastAPI(title="NFT Staking Node RPC")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
engine: Optional[StakingEngine] = None


def _engine() -> StakingEngine:
    if not engine:
        raise HTTPException(status_code=503, detail="Node not initialized")
    return engine


def _http_error(e: ProtocolError) -> HTTPException:
    """Maps the engine's error taxonomy to HTTP status codes."""
    if isinstance(e, ValidationError):
        status = 400
    elif isinstance(e, AuthorizationError):
        status = 403
    elif isinstance(e, NoSuchUnit):
        status = 404
    elif isinstance(e, (Paused, ReentrantCall, InsufficientBalance)):
        status = 409
    elif isinstance(e, FatalLedgerError):
        status = 500
    else:
        status = 400
    return HTTPException(status_code=status, detail={"error": type(e).__name__, "message": str(e)})


def _authenticate(eng: StakingEngine, req: SignedRequest, op: OperationType):
    """Raises InvalidSignature unless `req` was signed by the key behind `req.staker`."""
    if not req.signature or not req.pub_key:
        raise InvalidSignature("Missing signature or pub_key")
    try:
        derived = address_from_pubkey(bytes.fromhex(req.pub_key), prefix=eng.config.address_prefix)
    except ValueError as e:
        raise InvalidSignature(f"Invalid pub_key: {e}") from e
    if derived != req.staker:
        raise InvalidSignature(f"pub_key mismatch: derived {derived}, expected {req.staker}")
    if not req.verify_signature(op.value):
        raise InvalidSignature("Invalid signature")


@app.get("/status")
async def get_status():
    return _engine().status()


@app.get("/staker/{address}")
async def get_staker(address: str):
    eng = _engine()
    return {
        "address": address,
        "balance": eng.balance_of(address),
        "units": eng.units_of(address),
        "earned": str(eng.earned(address)),
        "nonce": eng.nonce_of(address),
    }


@app.get("/unit/{unit_id}")
async def get_unit(unit_id: int):
    eng = _engine()
    return {
        "unit": unit_id,
        "custodian": eng.custodian_of(unit_id),
        "staked": eng.custodian_of(unit_id) is not None,
    }


@app.post("/stake")
async def post_stake(req: BatchRequest):
    eng = _engine()
    try:
        _authenticate(eng, req, OperationType.STAKE)
        return eng.stake(req.staker, req.units, nonce=req.nonce).to_dict()
    except ProtocolError as e:
        raise _http_error(e)


@app.post("/withdraw")
async def post_withdraw(req: BatchRequest):
    eng = _engine()
    try:
        _authenticate(eng, req, OperationType.WITHDRAW)
        return eng.withdraw(req.staker, req.units, nonce=req.nonce).to_dict()
    except ProtocolError as e:
        raise _http_error(e)


@app.post("/exit")
async def post_exit(req: BatchRequest):
    eng = _engine()
    try:
        _authenticate(eng, req, OperationType.EXIT)
        return eng.exit(req.staker, req.units, nonce=req.nonce).to_dict()
    except ProtocolError as e:
        raise _http_error(e)


@app.post("/claim")
async def post_claim(req: ClaimRequest):
    eng = _engine()
    try:
        _authenticate(eng, req, OperationType.CLAIM)
        return eng.claim(req.staker, nonce=req.nonce).to_dict()
    except ProtocolError as e:
        raise _http_error(e)


@app.get("/receipt/{op_id}")
async def get_receipt(op_id: str):
    eng = _engine()
    receipt = eng.receipts.get(op_id)
    if receipt is None and eng.db is not None:
        raw = eng.db.get_operation(op_id)
        if raw:
            receipt = OperationReceipt.from_dict(json.loads(raw))
    if receipt is None:
        raise HTTPException(status_code=404, detail="Operation not found")
    return receipt.to_dict()


@app.get("/metrics")
async def get_metrics():
    """Prometheus metrics endpoint."""
    from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
    from ..observability.metrics import metrics_registry, update_metrics

    update_metrics(_engine())
    return Response(
        content=generate_latest(metrics_registry),
        media_type=CONTENT_TYPE_LATEST
    )


def start_rpc_server(engine_instance: StakingEngine, host: str = "0.0.0.0", port: int = 8000):
    global engine
    engine = engine_instance
    import uvicorn
    logger.info(f"Starting RPC on {host}:{port}")
    uvicorn.run(app, host=host, port=port)
