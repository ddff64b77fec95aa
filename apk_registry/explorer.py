"""
APK REGISTRY EXPLORER API

Read-only JSON API over a stored registry, for verifiers that need the apk
hash a quorum had at a past block, and for operators inspecting history.

The registry is loaded from the SQLite database named by APK_REGISTRY_DB
(default config.DEFAULT_DB_PATH) and reloaded at most every
EXPLORER_CACHE_TTL seconds. Embedding processes can call set_registry() to
serve a live registry instead.
"""

import os
import time
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Request, Path, Query
from fastapi.middleware.cors import CORSMiddleware
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded

from apk_registry import config
from apk_registry.block_clock import ManualBlockClock
from apk_registry.bn254 import g1_to_dict, hash_g1_point
from apk_registry.errors import (
    ApkRegistryError, NoHistoryBeforeBlock, HistoryIndexOutOfRange, IndexTooRecent, StaleIndex,
    StorageIntegrityError
)
from apk_registry.registry import BLSApkRegistry
from apk_registry.sqlite_apk_storage import SQLiteApkStorage

limiter = Limiter(key_func=get_remote_address)
app = FastAPI(title="APK Registry Explorer", version="1.0.0")
app.state.limiter = limiter

app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)  # type: ignore

ALLOWED_ORIGINS = [
    "http://localhost:5000",
    "http://127.0.0.1:5000",
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET"],
    allow_headers=["*"],
)

_registry_cache: Optional[BLSApkRegistry] = None
_registry_cache_time = 0.0
_registry_pinned = False


class _ReadOnlyGate:
    """Explorer registries never accept mutations"""

    def is_authorized(self, caller: str) -> bool:
        return False


def set_registry(registry: Optional[BLSApkRegistry]):
    """Serve this registry instead of loading from disk (None restores disk loading)"""
    global _registry_cache, _registry_cache_time, _registry_pinned
    _registry_cache = registry
    _registry_cache_time = time.time()
    _registry_pinned = registry is not None


def get_registry() -> BLSApkRegistry:
    """Get registry instance with EXPLORER_CACHE_TTL-second caching"""
    global _registry_cache, _registry_cache_time

    if _registry_pinned and _registry_cache is not None:
        return _registry_cache

    now = time.time()
    if _registry_cache is None or now - _registry_cache_time > config.EXPLORER_CACHE_TTL:
        db_path = os.getenv("APK_REGISTRY_DB", config.DEFAULT_DB_PATH)
        if not os.path.exists(db_path):
            raise HTTPException(status_code=503, detail=f"Registry database not found: {db_path}")
        storage = SQLiteApkStorage(db_path)
        try:
            _registry_cache = storage.load_registry(clock=ManualBlockClock(), gate=_ReadOnlyGate())
        except StorageIntegrityError as e:
            raise HTTPException(status_code=503, detail=f"Registry database failed integrity check: {e}")
        finally:
            storage.close()
        _registry_cache_time = now

    return _registry_cache


def _to_http_error(error: ApkRegistryError) -> HTTPException:
    if isinstance(error, (NoHistoryBeforeBlock, HistoryIndexOutOfRange)):
        return HTTPException(status_code=404, detail=str(error))
    if isinstance(error, (IndexTooRecent, StaleIndex)):
        return HTTPException(status_code=409, detail=str(error))
    return HTTPException(status_code=400, detail=str(error))


def _quorum_summary(registry: BLSApkRegistry, quorum_number: int) -> Dict[str, Any]:
    apk = registry.get_apk(quorum_number)
    return {
        "quorum_number": quorum_number,
        "apk": g1_to_dict(apk),
        "apk_hash": hash_g1_point(apk),
        "history_length": registry.get_apk_history_length(quorum_number)
    }


@app.get("/api/quorums")
@limiter.limit("60/minute")
async def api_get_quorums(request: Request):
    """API endpoint: Summary of every quorum with apk history (JSON)"""
    registry = get_registry()
    return {
        "quorums": [_quorum_summary(registry, q) for q in registry.get_quorum_numbers()]
    }


@app.get("/api/quorums/{quorum_number}/apk")
@limiter.limit("120/minute")
async def api_get_apk(request: Request, quorum_number: int = Path(..., ge=0, le=config.MAX_QUORUM_COUNT - 1)):
    """API endpoint: Current apk of a quorum (JSON)"""
    return _quorum_summary(get_registry(), quorum_number)


@app.get("/api/quorums/{quorum_number}/history")
@limiter.limit("60/minute")
async def api_get_history(request: Request, quorum_number: int = Path(..., ge=0, le=config.MAX_QUORUM_COUNT - 1)):
    """API endpoint: Full apk update history of a quorum (JSON)"""
    registry = get_registry()
    updates = registry.get_apk_history(quorum_number)
    return {
        "quorum_number": quorum_number,
        "updates": [dict(u.to_dict(), index=i) for i, u in enumerate(updates)]
    }


@app.get("/api/quorums/{quorum_number}/history/{index}")
@limiter.limit("120/minute")
async def api_get_history_entry(request: Request, quorum_number: int = Path(..., ge=0, le=config.MAX_QUORUM_COUNT - 1),
                                index: int = Path(..., ge=0)):
    """API endpoint: Single apk update by index (JSON)"""
    registry = get_registry()
    try:
        update = registry.get_apk_update_at_index(quorum_number, index)
    except ApkRegistryError as e:
        raise _to_http_error(e)
    return dict(update.to_dict(), quorum_number=quorum_number, index=index)


@app.get("/api/quorums/{quorum_number}/apk-index")
@limiter.limit("120/minute")
async def api_get_apk_index(request: Request, quorum_number: int = Path(..., ge=0, le=config.MAX_QUORUM_COUNT - 1),
                            block_number: int = Query(..., ge=0)):
    """
    API endpoint: Index of the apk update in force at block_number (JSON)

    Verifiers fetch this once and pass it to apk-hash (or their own
    on-chain check) together with the block number.
    """
    registry = get_registry()
    try:
        index = registry.get_apk_index_at_block_number(quorum_number, block_number)
    except ApkRegistryError as e:
        raise _to_http_error(e)
    return {"quorum_number": quorum_number, "block_number": block_number, "index": index}


@app.get("/api/quorums/{quorum_number}/apk-hash")
@limiter.limit("120/minute")
async def api_get_apk_hash(request: Request, quorum_number: int = Path(..., ge=0, le=config.MAX_QUORUM_COUNT - 1),
                           block_number: int = Query(..., ge=0),
                           index: int = Query(..., ge=0)):
    """API endpoint: Apk hash at block_number, validated against a supplied index (JSON)"""
    registry = get_registry()
    try:
        apk_hash = registry.get_apk_hash_at_block_number_and_index(quorum_number, block_number, index)
    except ApkRegistryError as e:
        raise _to_http_error(e)
    return {
        "quorum_number": quorum_number,
        "block_number": block_number,
        "index": index,
        "apk_hash": apk_hash
    }


@app.get("/api/apk-indices")
@limiter.limit("60/minute")
async def api_get_apk_indices(request: Request, quorums: str = Query(..., min_length=1),
                              block_number: int = Query(..., ge=0)):
    """API endpoint: Apk indices for several quorums at one block (JSON)"""
    try:
        quorum_numbers = [int(q) for q in quorums.split(",")]
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid quorum list: {quorums}")

    registry = get_registry()
    try:
        indices = registry.get_apk_indices_at_block_number(quorum_numbers, block_number)
    except ApkRegistryError as e:
        raise _to_http_error(e)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"block_number": block_number, "quorum_numbers": quorum_numbers, "indices": indices}


@app.get("/api/pubkeys/{pubkey_hash}/operator")
@limiter.limit("60/minute")
async def api_get_pubkey_operator(request: Request, pubkey_hash: str):
    """API endpoint: Operator that registered a pubkey hash (JSON)"""
    if not pubkey_hash.startswith("0x") or len(pubkey_hash) != 66:
        raise HTTPException(status_code=400, detail="Pubkey hash must be 0x followed by 64 hex chars")

    operator = get_registry().get_operator_from_pubkey_hash(pubkey_hash)
    if operator is None:
        raise HTTPException(status_code=404, detail="Pubkey not registered")
    return {"pubkey_hash": pubkey_hash.lower(), "operator": operator}
