from fastapi import APIRouter, Depends, Query
from typing import List, Optional
from sqlalchemy.orm import Session

from bookstore.api.deps import get_db
from bookstore.core.auth import require_admin, require_cron
from bookstore.core.config import settings
from bookstore.schemas import PayoutConfigCreate, PayoutConfigRead, PayoutConfigUpdate, PayoutRunSummary, TopupRequest, WalletRead
from bookstore.services import payhero, payouts
from bookstore.services.payouts import WithdrawalResult

router = APIRouter()

@router.get("/payouts", response_model=List[PayoutConfigRead], dependencies=[Depends(require_admin)])
def list_configs(db: Session = Depends(get_db)):
    return [PayoutConfigRead.model_validate(c) for c in payouts.list_configs(db)]

@router.post("/payouts", response_model=PayoutConfigRead, status_code=201, dependencies=[Depends(require_admin)])
def create_config(payload: PayoutConfigCreate, db: Session = Depends(get_db)):
    config = payouts.create_config(db, payload.model_dump(mode="json"))
    return PayoutConfigRead.model_validate(config)

@router.get("/payouts/wallet", response_model=WalletRead, dependencies=[Depends(require_admin)])
def wallet():
    return WalletRead(
        channel_id=settings.PAYHERO_WALLET_CHANNEL_ID,
        balance=payhero.wallet_balance(),
        service_balance=payhero.service_wallet_balance(),
    )

@router.get("/payouts/wallet/transactions", dependencies=[Depends(require_admin)])
def wallet_transactions(
    page: int = Query(1, ge=1),
    per_page: int = Query(20, ge=1, le=100),
    status: Optional[str] = None,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
):
    return payhero.transactions({
        "page": page, "per_page": per_page, "status": status,
        "start_date": start_date, "end_date": end_date,
    })

@router.post("/payouts/wallet/topup", dependencies=[Depends(require_admin)])
def wallet_topup(payload: TopupRequest):
    return payhero.topup(payload.amount, payload.phone)

@router.post("/payouts/run-due", response_model=PayoutRunSummary, dependencies=[Depends(require_cron)])
def run_due_payouts(db: Session = Depends(get_db)):
    return PayoutRunSummary(**payouts.process_due_payouts(db))

@router.patch("/payouts/{config_id}", response_model=PayoutConfigRead, dependencies=[Depends(require_admin)])
def update_config(config_id: int, payload: PayoutConfigUpdate, db: Session = Depends(get_db)):
    config = payouts.update_config(db, config_id, payload.model_dump(mode="json", exclude_unset=True))
    return PayoutConfigRead.model_validate(config)

@router.delete("/payouts/{config_id}", dependencies=[Depends(require_admin)])
def delete_config(config_id: int, db: Session = Depends(get_db)):
    payouts.delete_config(db, config_id)
    return {"status": "deleted"}

@router.post("/payouts/{config_id}/payout-now", response_model=WithdrawalResult, dependencies=[Depends(require_admin)])
def payout_now(config_id: int, db: Session = Depends(get_db)):
    config = payouts.get_config(db, config_id)
    return payouts.process_payout(db, config)
