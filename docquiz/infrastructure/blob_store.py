from typing import Optional

import gridfs
from itsdangerous import BadSignature, URLSafeTimedSerializer
from pymongo.database import Database
from pymongo.errors import PyMongoError

from docquiz.domain.errors import StorageError
from dq_utils.logger_utils import logger


class BlobStore:
    """
    Raw uploads and parsed content, stored in GridFS under a string key.

    A key maps to the latest GridFS file with that filename; writing a key
    again replaces the previous version.
    """

    def __init__(self, database: Database):
        self.fs = gridfs.GridFS(database)

    def put(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> None:
        try:
            previous = [grid_out._id for grid_out in self.fs.find({"filename": key})]
            self.fs.put(data, filename=key, contentType=content_type)
            for old_id in previous:
                self.fs.delete(old_id)
            logger.info("BlobStore.put", extra={"key": key, "size": len(data)})
        except PyMongoError as e:
            logger.error("BlobStore.put failed", extra={"key": key, "error": str(e)}, exc_info=True)
            raise StorageError(f"Failed to store '{key}'") from e

    def get(self, key: str) -> Optional[bytes]:
        try:
            return self.fs.get_last_version(filename=key).read()
        except gridfs.errors.NoFile:
            return None
        except PyMongoError as e:
            logger.error("BlobStore.get failed", extra={"key": key, "error": str(e)}, exc_info=True)
            raise StorageError(f"Failed to read '{key}'") from e

    def head(self, key: str) -> bool:
        try:
            return self.fs.exists(filename=key)
        except PyMongoError as e:
            logger.error("BlobStore.head failed", extra={"key": key, "error": str(e)}, exc_info=True)
            raise StorageError(f"Failed to check '{key}'") from e

    def delete(self, key: str) -> None:
        try:
            for grid_out in self.fs.find({"filename": key}):
                self.fs.delete(grid_out._id)
            logger.info("BlobStore.delete", extra={"key": key})
        except PyMongoError as e:
            logger.error("BlobStore.delete failed", extra={"key": key, "error": str(e)}, exc_info=True)
            raise StorageError(f"Failed to delete '{key}'") from e


class BlobUrlSigner:
    """
    Expiring tokens for the download route.

    GridFS has no public address, so the parser fetches uploads from this
    service with a token bound to one blob key.
    """
    SALT = "docquiz.blob-download"

    def __init__(self, secret_key: str, max_age_seconds: int):
        self.serializer = URLSafeTimedSerializer(secret_key, salt=self.SALT)
        self.max_age_seconds = max_age_seconds

    def sign(self, key: str) -> str:
        return self.serializer.dumps(key)

    def verify(self, key: str, token: Optional[str]) -> bool:
        if not token:
            return False
        try:
            signed_key = self.serializer.loads(token, max_age=self.max_age_seconds)
        except BadSignature as e:
            # SignatureExpired is a BadSignature too
            logger.warning("Rejected download token", extra={"key": key, "error": str(e)})
            return False
        return signed_key == key
