from fastapi import APIRouter, Depends
from typing import List
from sqlalchemy.orm import Session
from bookstore.api.deps import get_db
from bookstore.core.auth import Identity, get_current_identity, require_admin
from bookstore.schemas import CheckoutRead, OrderCreate, OrderRead, OrderStatusUpdate
from bookstore.services import ledger, payments

router = APIRouter()

@router.post("/orders", response_model=OrderRead, status_code=201)
def create_order(payload: OrderCreate, identity: Identity = Depends(get_current_identity), db: Session = Depends(get_db)):
    order = ledger.create_order(db, identity.user_id, payload.items)
    return OrderRead.model_validate(order)

@router.get("/orders", response_model=List[OrderRead])
def list_orders(identity: Identity = Depends(get_current_identity), db: Session = Depends(get_db)):
    return [OrderRead.model_validate(o) for o in ledger.list_orders(db, identity)]

@router.get("/orders/by-ref/{custom_id}", response_model=OrderRead)
def get_order_by_reference(custom_id: str, identity: Identity = Depends(get_current_identity), db: Session = Depends(get_db)):
    return OrderRead.model_validate(ledger.get_order_by_reference(db, custom_id, identity))

@router.get("/orders/{order_id}", response_model=OrderRead)
def get_order(order_id: int, identity: Identity = Depends(get_current_identity), db: Session = Depends(get_db)):
    return OrderRead.model_validate(ledger.get_order(db, order_id, identity))

@router.patch("/orders/{order_id}", response_model=OrderRead)
def update_order_status(order_id: int, payload: OrderStatusUpdate, _: Identity = Depends(require_admin), db: Session = Depends(get_db)):
    result = ledger.transition_status(db, order_id, payload.status)
    return OrderRead.model_validate(result.order)

@router.post("/checkout", response_model=CheckoutRead, status_code=201)
def checkout(payload: OrderCreate, identity: Identity = Depends(get_current_identity), db: Session = Depends(get_db)):
    order, session = payments.checkout(db, identity, payload.items)
    return CheckoutRead(order=OrderRead.model_validate(order), payment=session)
