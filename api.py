# api.py
import os
import time
from functools import lru_cache
from typing import Dict, List

from fastapi import Depends, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

import shared
from roles import PriorityRoleList
from wallet_store import WalletRecord, WalletStore

# ---- Wiring (overridden in tests) ----
@lru_cache(maxsize=1)
def get_store() -> WalletStore:
    shared.check_config()
    return shared.get_wallet_store()

@lru_cache(maxsize=1)
def get_priority() -> PriorityRoleList:
    return shared.priority_roles()

# ---- Simple cache ----
CACHE_TTL = int(os.getenv("CACHE_TTL", "60"))  # seconds
_cache = {"at": 0.0, "rows": []}

def clear_cache():
    _cache["at"] = 0.0
    _cache["rows"] = []

async def _records(store: WalletStore) -> List[WalletRecord]:
    now = time.time()
    if now - _cache["at"] > CACHE_TTL or not _cache["rows"]:
        _cache["rows"] = await store.list_all()
        _cache["at"] = now
    return _cache["rows"]

def _as_dict(rec: WalletRecord) -> Dict[str, str]:
    return {
        "username": rec.display_name,
        "discord_id": rec.member_id,
        "wallet": rec.wallet_address,
        "role": rec.role_label,
    }

# ---- FastAPI ----
app = FastAPI(title="Wallets API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("CORS_ORIGINS", "*").split(","),
    allow_methods=["GET"],
    allow_headers=["*"],
)

@app.get("/health")
async def health():
    return {"ok": True}

@app.get("/priority-roles")
async def priority_roles(priority: PriorityRoleList = Depends(get_priority)):
    # ids as strings, snowflakes overflow JS numbers
    return [{"id": str(pr.role_id), "label": pr.label, "rank": i} for i, pr in enumerate(priority)]

@app.get("/wallets/{member_id}")
async def wallet(member_id: str, store: WalletStore = Depends(get_store)):
    for rec in await _records(store):
        if rec.member_id == member_id:
            return _as_dict(rec)
    raise HTTPException(status_code=404, detail="No wallet submitted for this member")
