from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from bookstore.api.deps import get_db
from bookstore.core.auth import Identity, get_current_identity
from bookstore.schemas import DownloadRequest
from bookstore.services.delivery import DownloadLink, issue_download

router = APIRouter()

@router.post("/download", response_model=DownloadLink)
def download(payload: DownloadRequest, identity: Identity = Depends(get_current_identity), db: Session = Depends(get_db)):
    return issue_download(db, identity, payload.order_id, payload.book_id)
