from datetime import timedelta
from minio import Minio
from bookstore.core.config import settings
from bookstore.core.resources import LazyResource

def _endpoint() -> str:
    return settings.S3_ENDPOINT.replace('http://', '').replace('https://', '')

# region is pinned so presigning never needs a round trip to the bucket
object_store = LazyResource(
    lambda: Minio(_endpoint(), access_key=settings.S3_ACCESS_KEY, secret_key=settings.S3_SECRET_KEY,
                  secure=settings.S3_SECURE, region=settings.S3_REGION),
    "object-store",
)

def presigned_download(object_key: str, filename: str, ttl_seconds: int) -> str:
    return object_store.get().presigned_get_object(
        settings.S3_BUCKET,
        object_key,
        expires=timedelta(seconds=ttl_seconds),
        response_headers={"response-content-disposition": f'attachment; filename="{filename}"'},
    )
