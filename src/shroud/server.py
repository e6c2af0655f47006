"""
HTTP surface for the gateway.

Every protected resource is mounted at its path (GET and POST). Callers
see 402 with a challenge, 200 with the resource body and an
``X-Payment-Response`` receipt, or a structured ``{"error", "detail"}``
body. Owner-facing audit routes expose the masked ledger and gate
plaintext behind a signed attestation.
"""

from __future__ import annotations

import logging
from typing import Optional

from eth_utils import is_address
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.concurrency import run_in_threadpool

from . import __version__
from .errors import AttestationError
from .gateway import PayerContext, PaymentGateway
from .ledger import ActivityLedger
from .protocol import HEADER_NAME, ProtectedResource

logger = logging.getLogger(__name__)

OWNER_HEADER = "X-Owner"
POOL_ADDRESS_HEADER = "X-Pool-Address"
POOL_ID_HEADER = "X-Pool-Id"
AGENT_ID_HEADER = "X-Agent-Id"


class DecryptRequest(BaseModel):
    signature: str
    entryId: Optional[str] = None


def _invalid_owner(owner: Optional[str]) -> Optional[JSONResponse]:
    if owner is None or is_address(owner):
        return None
    return JSONResponse(
        {"error": "invalid_owner", "detail": f"Owner must be a 0x-prefixed address: {owner!r}"},
        status_code=400,
    )


def _payer_context(request: Request) -> PayerContext:
    return PayerContext(
        owner=request.headers.get(OWNER_HEADER),
        pool_address=request.headers.get(POOL_ADDRESS_HEADER),
        pool_id=request.headers.get(POOL_ID_HEADER),
        agent_id=request.headers.get(AGENT_ID_HEADER),
    )


def create_app(gateway: PaymentGateway, ledger: Optional[ActivityLedger] = None) -> FastAPI:
    """Build the app around an already-constructed gateway."""
    ledger = ledger if ledger is not None else gateway.ledger
    app = FastAPI(title="Shroud Gateway", version=__version__)

    def _mount(resource: ProtectedResource):
        async def endpoint(request: Request):
            rejected = _invalid_owner(request.headers.get(OWNER_HEADER))
            if rejected is not None:
                return rejected
            body = None
            if request.method == "POST":
                try:
                    body = await request.json()
                except ValueError:
                    body = None
            result = await run_in_threadpool(
                gateway.process,
                resource.path,
                request.headers.get(HEADER_NAME),
                _payer_context(request),
                body,
            )
            return JSONResponse(result.body, status_code=result.status_code, headers=result.headers)

        app.add_api_route(
            resource.path,
            endpoint,
            methods=["GET", "POST"],
            name=resource.path.strip("/").replace("/", "_"),
            description=resource.description,
        )

    for resource in gateway.resources:
        _mount(resource)

    @app.get("/health")
    async def health():
        return {
            "status": "ok",
            "version": __version__,
            "network": gateway.network,
            "facilitator": gateway.facilitator.info(),
            "ledger": ledger is not None,
        }

    @app.get("/x402/services")
    async def services():
        return {
            "success": True,
            "services": gateway.services(),
            "x402Protocol": {"version": "1.0", "standard": "HTTP 402 Payment Required"},
        }

    @app.get("/pools/{pool_address}/balance")
    async def pool_balance(pool_address: str, pool_id: str = ""):
        resolved = await run_in_threadpool(gateway.pool_balance, pool_address, pool_id)
        return {
            "poolAddress": pool_address,
            "amount": str(resolved.amount),
            "source": resolved.source,
            "trusted": resolved.trusted,
        }

    def _require_ledger() -> ActivityLedger:
        if ledger is None:
            raise HTTPException(status_code=404, detail="Activity ledger is not enabled")
        return ledger

    @app.get("/audit/{owner}")
    async def audit_list(owner: str):
        active = _require_ledger()
        rejected = _invalid_owner(owner)
        if rejected is not None:
            return rejected
        entries = active.list(owner)
        return {"owner": owner.lower(), "count": len(entries), "entries": [e.to_dict() for e in entries]}

    @app.get("/audit/{owner}/stats")
    async def audit_stats(owner: str):
        active = _require_ledger()
        rejected = _invalid_owner(owner)
        if rejected is not None:
            return rejected
        return {"owner": owner.lower(), **active.activity_count(owner)}

    @app.get("/audit/{owner}/total")
    async def audit_total(owner: str):
        active = _require_ledger()
        rejected = _invalid_owner(owner)
        if rejected is not None:
            return rejected
        total = await run_in_threadpool(active.encrypted_total, owner)
        return {"owner": owner.lower(), **total.to_dict()}

    @app.post("/audit/{owner}/decrypt")
    async def audit_decrypt(owner: str, payload: DecryptRequest):
        active = _require_ledger()
        rejected = _invalid_owner(owner)
        if rejected is not None:
            return rejected
        try:
            batch = await run_in_threadpool(active.attested_decrypt, owner, payload.signature, payload.entryId)
        except AttestationError as e:
            return JSONResponse({"error": "attestation_failed", "detail": str(e)}, status_code=403)
        return batch.to_dict()

    return app
