import math

from fastapi import APIRouter, Depends, Query, Request, status

from pharmatrace.schemas import (
    BatchCreate,
    DistributionRequest,
    LedgerStatsOut,
    MirrorRecordOut,
    PendingResponse,
    QRCodeOut,
    RecallRequest,
    ScanRequest,
    TransactionPage,
    TransactionStatusOut,
    VerificationResult,
)

router = APIRouter()


def get_service(request: Request):
    return request.app.state.service


# ── Batches ─────────────────────────────────────────────────────────────────────

@router.post("/batches", response_model=PendingResponse, status_code=status.HTTP_202_ACCEPTED, tags=["batches"])
async def create_batch(body: BatchCreate, service=Depends(get_service)):
    handle = await service.enqueue_create(body)
    return PendingResponse(batch_id=handle.batch_id, action=handle.action)


@router.get("/batches/{batch_id}", response_model=MirrorRecordOut, tags=["batches"])
async def get_batch(batch_id: str, service=Depends(get_service)):
    record = await service.get_batch(batch_id)
    return record.to_dict()


@router.post("/batches/{batch_id}/recall", response_model=PendingResponse, status_code=status.HTTP_202_ACCEPTED, tags=["batches"])
async def recall_batch(batch_id: str, body: RecallRequest, service=Depends(get_service)):
    handle = await service.enqueue_recall(batch_id, body.reason)
    return PendingResponse(batch_id=handle.batch_id, action=handle.action)


@router.post("/batches/{batch_id}/distribution", response_model=PendingResponse, status_code=status.HTTP_202_ACCEPTED, tags=["batches"])
async def record_distribution(batch_id: str, body: DistributionRequest, service=Depends(get_service)):
    handle = await service.enqueue_distribution(batch_id, body)
    return PendingResponse(batch_id=handle.batch_id, action=handle.action)


@router.get("/batches/{batch_id}/qr", response_model=QRCodeOut, tags=["batches"])
async def batch_qr_code(batch_id: str, service=Depends(get_service)):
    return await service.qr_code(batch_id)


# ── Verification ────────────────────────────────────────────────────────────────

@router.get("/verify/{identifier}", response_model=VerificationResult, tags=["verification"])
async def verify(identifier: str, service=Depends(get_service)):
    return await service.verify(identifier)


@router.post("/verify/scan", response_model=VerificationResult, tags=["verification"])
async def verify_scan(body: ScanRequest, service=Depends(get_service)):
    return await service.verify_scan(body.payload)


# ── Ledger ──────────────────────────────────────────────────────────────────────

@router.get("/ledger/stats", response_model=LedgerStatsOut, tags=["ledger"])
async def ledger_stats(service=Depends(get_service)):
    stats = await service.stats()
    return stats.as_dict()


@router.get("/transactions", response_model=TransactionPage, tags=["ledger"])
async def list_transactions(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    status_filter: str | None = Query(None, alias="status"),
    service=Depends(get_service),
):
    items, total = await service.list_transactions(page=page, limit=limit, status=status_filter)
    return TransactionPage(
        items=items,
        page=page,
        limit=limit,
        total=total,
        pages=math.ceil(total / limit) if total else 0,
    )


@router.get("/transactions/{tx_hash}", response_model=TransactionStatusOut, response_model_by_alias=True, tags=["ledger"])
async def transaction_status(tx_hash: str, service=Depends(get_service)):
    return await service.transaction_status(tx_hash)
