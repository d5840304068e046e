from azure.storage.blob import BlobServiceClient, ContentSettings
import logging
import uuid

from config import Settings

logger = logging.getLogger(__name__)

SCAN_CONTAINER = "scan-images"
RECEIPT_CONTAINER = "receipt-images"

_EXTENSIONS = {
     "image/jpeg": ".jpg",
     "image/jpg": ".jpg",
     "image/png": ".png",
     "image/webp": ".webp",
}


class BlobImageArchive:
     """
     Archives accepted uploads to Azure Blob Storage and returns their URL
     """

     def __init__(self, account: str, key: str):
          self.account = account
          self.blob_service = BlobServiceClient.from_connection_string(
               f"DefaultEndpointsProtocol=https;"
               f"AccountName={account};"
               f"AccountKey={key};"
               f"EndpointSuffix=core.windows.net"
          )

     def upload(self, data: bytes, content_type: str, container: str, prefix: str) -> str:
          ext = _EXTENSIONS.get(content_type, "")
          filename = f"{prefix}/{uuid.uuid4()}{ext}"
          blob_client = self.blob_service.get_blob_client(container=container, blob=filename)
          blob_client.upload_blob(
               data,
               overwrite=False,
               content_settings=ContentSettings(content_type=content_type),
          )
          return f"https://{self.account}.blob.core.windows.net/{container}/{filename}"


def build_archive(settings: Settings):
     if not settings.azure_storage_account or not settings.azure_storage_key:
          logger.info("Azure storage not configured; uploads will not be archived")
          return None
     return BlobImageArchive(settings.azure_storage_account, settings.azure_storage_key)
