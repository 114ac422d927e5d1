import base64
import hashlib
import urllib.parse
from datetime import datetime, timedelta, timezone
from pathlib import Path

import httpx

from src.config import get_settings

settings = get_settings()


class LocalStorageService:
    """Local file storage for development without GCS."""

    def __init__(self) -> None:
        self.base_path = Path(settings.local_storage_path)
        self.base_path.mkdir(parents=True, exist_ok=True)

    def _get_full_path(self, storage_key: str) -> Path:
        full_path = (self.base_path / storage_key).resolve()
        if not full_path.is_relative_to(self.base_path.resolve()):
            raise ValueError(f"Storage key escapes storage root: {storage_key}")
        return full_path

    def get_public_url(self, storage_key: str) -> str:
        """Get URL for accessing the file."""
        quoted_key = urllib.parse.quote(storage_key, safe="/")
        return f"{settings.public_base_url.rstrip('/')}/api/storage/files/{quoted_key}"

    def generate_download_url(self, storage_key: str, expires_minutes: int = 60) -> str:
        """Generate download URL. Local files are served without signing."""
        return self.get_public_url(storage_key)

    def file_exists(self, storage_key: str) -> bool:
        """Check if file exists."""
        return self._get_full_path(storage_key).is_file()

    def get_file_path(self, storage_key: str) -> Path:
        """Get the actual file path for serving."""
        return self._get_full_path(storage_key)


class GCSStorageService:
    """Google Cloud Storage service for production."""

    def __init__(self) -> None:
        from google.auth import compute_engine, default
        from google.auth.transport import requests as auth_requests
        from google.cloud import storage

        self._storage = storage
        self._client: storage.Client | None = None
        self._bucket: storage.Bucket | None = None

        # Get default credentials
        self._credentials, self._project = default()
        self._service_account_email: str | None = None
        self._auth_request = auth_requests.Request()

        # Cloud Run / Compute Engine credentials cannot sign locally; the
        # service account email is needed for the IAM signBlob API.
        if isinstance(self._credentials, compute_engine.Credentials):
            self._credentials.refresh(self._auth_request)
            self._service_account_email = self._credentials.service_account_email
        elif hasattr(self._credentials, "service_account_email"):
            self._service_account_email = self._credentials.service_account_email

    @property
    def client(self):
        if self._client is None:
            if settings.gcs_project_id:
                self._client = self._storage.Client(project=settings.gcs_project_id)
            else:
                self._client = self._storage.Client()
        return self._client

    @property
    def bucket(self):
        if self._bucket is None:
            self._bucket = self.client.bucket(settings.gcs_bucket_name)
        return self._bucket

    def _sign_blob(self, payload: bytes) -> bytes:
        """Sign bytes using IAM signBlob API."""
        # Ensure credentials are fresh
        if not self._credentials.valid:
            self._credentials.refresh(self._auth_request)

        url = (
            "https://iamcredentials.googleapis.com/v1/projects/-/serviceAccounts/"
            f"{self._service_account_email}:signBlob"
        )
        response = httpx.post(
            url,
            json={"payload": base64.b64encode(payload).decode("utf-8")},
            headers={
                "Authorization": f"Bearer {self._credentials.token}",
                "Content-Type": "application/json",
            },
            timeout=30.0,
        )
        if response.status_code != 200:
            raise RuntimeError(f"IAM signBlob failed: {response.status_code} {response.text}")
        return base64.b64decode(response.json()["signedBlob"])

    def _generate_signed_url_v4(
        self,
        storage_key: str,
        method: str,
        expires_minutes: int = 60,
    ) -> str:
        """Generate a V4 signed URL using IAM signBlob API."""
        now = datetime.now(timezone.utc)
        credential_scope_date = now.strftime("%Y%m%d")
        request_timestamp = now.strftime("%Y%m%dT%H%M%SZ")
        expiration = int(timedelta(minutes=expires_minutes).total_seconds())

        host = f"{settings.gcs_bucket_name}.storage.googleapis.com"
        canonical_uri = "/" + urllib.parse.quote(storage_key, safe="/")
        credential_scope = f"{credential_scope_date}/auto/storage/goog4_request"
        credential = f"{self._service_account_email}/{credential_scope}"

        # Query parameters
        query_params = {
            "X-Goog-Algorithm": "GOOG4-RSA-SHA256",
            "X-Goog-Credential": credential,
            "X-Goog-Date": request_timestamp,
            "X-Goog-Expires": str(expiration),
            "X-Goog-SignedHeaders": "host",
        }
        canonical_query_string = "&".join(
            f"{urllib.parse.quote(k, safe='')}={urllib.parse.quote(v, safe='')}"
            for k, v in sorted(query_params.items())
        )

        canonical_request = "\n".join([
            method,
            canonical_uri,
            canonical_query_string,
            f"host:{host}\n",
            "host",
            "UNSIGNED-PAYLOAD",
        ])

        # String to sign
        canonical_request_hash = hashlib.sha256(canonical_request.encode()).hexdigest()
        string_to_sign = "\n".join([
            "GOOG4-RSA-SHA256",
            request_timestamp,
            credential_scope,
            canonical_request_hash,
        ])

        signature_hex = self._sign_blob(string_to_sign.encode()).hex()
        return f"https://{host}{canonical_uri}?{canonical_query_string}&X-Goog-Signature={signature_hex}"

    def generate_download_url(
        self,
        storage_key: str,
        expires_minutes: int = 60,
    ) -> str:
        """Generate a signed URL for downloading a file."""
        return self._generate_signed_url_v4(
            storage_key=storage_key,
            method="GET",
            expires_minutes=expires_minutes,
        )

    def file_exists(self, storage_key: str) -> bool:
        """Check if a file exists in GCS."""
        return self.bucket.blob(storage_key).exists()


# Use LocalStorageService or GCSStorageService based on config
StorageService = LocalStorageService if settings.use_local_storage else GCSStorageService

_storage_service: LocalStorageService | GCSStorageService | None = None


def get_storage_service() -> LocalStorageService | GCSStorageService:
    global _storage_service
    if _storage_service is None:
        _storage_service = StorageService()
    return _storage_service
