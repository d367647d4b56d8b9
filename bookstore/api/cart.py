from fastapi import APIRouter, Depends

from bookstore.core.auth import Identity, get_current_identity
from bookstore.schemas import CartMergeRead, CartRead, CartUpdate
from bookstore.services import cart_sync

router = APIRouter()

@router.get("/cart", response_model=CartRead)
def get_my_cart(identity: Identity = Depends(get_current_identity)):
    items = cart_sync.load_cart(identity.user_id)
    return CartRead(items=cart_sync.resolve_lines(items))

@router.post("/cart", response_model=CartRead)
def replace_my_cart(payload: CartUpdate, identity: Identity = Depends(get_current_identity)):
    items = cart_sync.to_quantity_map(payload.items)
    cart_sync.save_cart(identity.user_id, items)
    return CartRead(items=cart_sync.resolve_lines(cart_sync.load_cart(identity.user_id)))

@router.post("/cart/merge", response_model=CartMergeRead)
def merge_guest_cart(payload: CartUpdate, identity: Identity = Depends(get_current_identity)):
    guest = cart_sync.SubmittedGuestCart(items=cart_sync.to_quantity_map(payload.items))
    outcome = cart_sync.synchronize(identity.user_id, guest)
    return CartMergeRead(items=cart_sync.resolve_lines(outcome.items), guest_cleared=guest.cleared)
